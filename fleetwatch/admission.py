"""
Admission policy - which waiting nodes may start disruptive update phases

Pure functions over a snapshot of records. Nothing here remembers previous
decisions; every call recomputes from the records it is given.
"""
from collections import Counter, defaultdict
from datetime import datetime, timezone

from fleetwatch.record import Phase

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def held_slots(records):
    """Count slot-holding nodes per partition"""
    return Counter(r.partition_key for r in records if r.holds_slot)


def waiting_order(record):
    """FIFO by the time the node entered WaitingForAdmission, then by name"""
    return (record.phase_since or _NEVER, record.node_id)


def waiting_queues(records):
    """Waiting records per partition, in admission order"""
    queues = defaultdict(list)
    for record in records:
        if record.phase == Phase.WAITING_FOR_ADMISSION:
            queues[record.partition_key].append(record)
    for queue in queues.values():
        queue.sort(key=waiting_order)
    return dict(queues)


def plan_admissions(records, max_per_partition):
    """Return the records to admit, in the order they should be admitted.

    A partition already at (or, after an operator edit, above) its bound
    admits nobody.
    """
    held = held_slots(records)
    admitted = []
    for partition, queue in sorted(waiting_queues(records).items()):
        free = max_per_partition - held[partition]
        if free > 0:
            admitted.extend(queue[:free])
    return admitted
