"""Tests for the admission policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fleetwatch.admission import held_slots, plan_admissions, waiting_queues
from fleetwatch.record import NodeRecord, Phase

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def waiting(name, seconds, partition='zone-a'):
    return NodeRecord(name, phase=Phase.WAITING_FOR_ADMISSION, partition_key=partition,
                      phase_since=T0 + timedelta(seconds=seconds))


def in_phase(name, phase, partition='zone-a'):
    return NodeRecord(name, phase=phase, partition_key=partition, phase_since=T0)


def names(records):
    return [r.node_id for r in records]


def test_fifo_by_entry_time():
    records = [waiting('node-c', 30), waiting('node-a', 20), waiting('node-b', 10)]
    assert names(plan_admissions(records, 2)) == ['node-b', 'node-a']


def test_ties_broken_by_name():
    records = [waiting('node-b', 10), waiting('node-a', 10)]
    assert names(plan_admissions(records, 1)) == ['node-a']


def test_missing_timestamp_goes_last():
    late = NodeRecord('node-a', phase=Phase.WAITING_FOR_ADMISSION, partition_key='zone-a')
    assert names(plan_admissions([late, waiting('node-z', 999)], 1)) == ['node-z']


def test_held_slots_block_admission():
    records = [in_phase('node-a', Phase.UPDATING), waiting('node-b', 10)]
    assert plan_admissions(records, 1) == []


def test_completed_still_holds_slot():
    records = [in_phase('node-a', Phase.COMPLETED), waiting('node-b', 10)]
    assert plan_admissions(records, 1) == []


def test_errored_does_not_hold_slot():
    records = [in_phase('node-a', Phase.ERRORED), waiting('node-b', 10)]
    assert names(plan_admissions(records, 1)) == ['node-b']


def test_partitions_are_independent():
    records = [
        in_phase('node-a', Phase.REBOOTING, partition='zone-a'),
        waiting('node-b', 10, partition='zone-a'),
        waiting('node-c', 20, partition='zone-b'),
        waiting('node-d', 5, partition='zone-b'),
    ]
    assert names(plan_admissions(records, 1)) == ['node-d']


def test_over_bound_partition_admits_nobody():
    records = [
        in_phase('node-a', Phase.DRAINING),
        in_phase('node-b', Phase.VERIFYING),
        waiting('node-c', 10),
    ]
    assert plan_admissions(records, 1) == []


def test_bound_never_exceeded():
    records = [in_phase('node-a', Phase.UPDATING)] + [waiting(f"node-{i}", i) for i in range(10)]
    for bound in range(1, 6):
        admitted = plan_admissions(records, bound)
        assert held_slots(records)['zone-a'] + len(admitted) == bound


def test_waiting_queues_only_waiting():
    records = [waiting('node-a', 1), in_phase('node-b', Phase.IDLE)]
    assert {p: names(q) for p, q in waiting_queues(records).items()} == {'zone-a': ['node-a']}
