"""
fleetwatch coordinator - cluster-wide admission and disruption

Each cycle lists every record and recomputes what to do from that snapshot
alone: release finished nodes, restore schedulability of failed ones, admit
waiting nodes up to the partition bound, then cordon and drain admitted
nodes. Watch notifications only wake the loop up.
"""
import logging
import threading
from dataclasses import dataclass, field

from fleetwatch.admission import plan_admissions
from fleetwatch.errors import DrainError, DrainTimeoutError, FleetwatchError, TransientInfraError
from fleetwatch.record import ErrorReason, Phase, Writer, utcnow
from fleetwatch.resolver import advance

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """What a reconcile cycle did, for logging and tests"""
    released: list = field(default_factory=list)
    admitted: list = field(default_factory=list)
    drained: list = field(default_factory=list)
    errored: list = field(default_factory=list)
    uncordoned: list = field(default_factory=list)
    failures: dict = field(default_factory=dict)

    @property
    def changed(self):
        return bool(self.released or self.admitted or self.drained or self.errored or self.uncordoned)


class Coordinator:
    """Single admission authority for the cluster"""

    def __init__(self, store, resolver, disruptor, config, clock=utcnow):
        self.store = store
        self.resolver = resolver
        self.disruptor = disruptor
        self.config = config
        self.clock = clock
        self._stopped = threading.Event()

    def run(self):
        """Main coordinator loop"""
        logger.info(
            f"Coordinator starting: max {self.config.max_concurrent_per_partition} "
            f"concurrent update(s) per partition, drain timeout {self.config.drain_timeout:.0f}s"
        )

        while not self._stopped.is_set():
            try:
                report = self.reconcile()
                if report.changed:
                    logger.info(
                        f"Cycle: released={report.released} admitted={report.admitted} "
                        f"drained={report.drained} errored={report.errored}"
                    )
            except TransientInfraError as e:
                logger.warning(f"Coordinator cycle failed, will retry: {e}")
                self._stopped.wait(self.config.infra_backoff.base)
                continue
            except Exception as e:
                logger.error(f"Error in coordinator loop: {e}", exc_info=True)

            self.wait_for_change()

    def stop(self):
        self._stopped.set()

    def wait_for_change(self):
        """Block until any record changes or the resync interval passes"""
        try:
            for event in self.store.watch_all(self.config.resync_interval):
                logger.debug(f"Woken by change to {event.node_id} at revision {event.revision}")
                break
        except TransientInfraError as e:
            logger.warning(f"Watch failed: {e}")
            self._stopped.wait(self.config.infra_backoff.base)

    def reconcile(self):
        """Run one level-triggered cycle over the current records"""
        report = CycleReport()
        records = self.store.list_all()
        by_name = {r.node_id: r for r in records}

        for record in records:
            if record.phase == Phase.COMPLETED:
                self._guarded(report, record, self.release)
            elif record.phase == Phase.ERRORED:
                self._guarded(report, record, self.restore_schedulable)

        # Released nodes no longer hold a slot
        current = [
            r for r in records
            if not (r.node_id in report.released and r.phase == Phase.COMPLETED)
        ]

        for record in plan_admissions(current, self.config.max_concurrent_per_partition):
            written = self._guarded(report, record, self.admit)
            if written is not None and written.phase == Phase.DRAINING:
                by_name[record.node_id] = written

        for record in sorted(by_name.values(), key=lambda r: r.node_id):
            if record.phase == Phase.DRAINING:
                self._guarded(report, record, self.drive_drain)

        return report

    def _guarded(self, report, record, action):
        """Run a per-node action; one node's failure never stops the cycle"""
        try:
            return action(record, report)
        except FleetwatchError as e:
            logger.error(f"{action.__name__} failed for node {record.node_id}: {e}")
            report.failures[record.node_id] = e
            return None

    def release(self, record, report):
        """Uncordon a finished node and return it to Idle"""
        node = record.node_id
        if self.disruptor.is_cordoned(node):
            self.disruptor.uncordon(node)
            report.uncordoned.append(node)

        written = self.resolver.apply(node, advance(
            Phase.COMPLETED, Phase.IDLE, Writer.COORDINATOR, now=self.clock(),
        ))
        if written is not None and written.phase == Phase.IDLE:
            logger.info(f"Node {node} completed update to {written.current_version}, slot released")
            report.released.append(node)
        return written

    def restore_schedulable(self, record, report):
        """Best-effort uncordon of a failed node; the phase stays Errored"""
        node = record.node_id
        try:
            if self.disruptor.is_cordoned(node):
                logger.info(f"Node {node} is Errored ({_reason(record)}), uncordoning")
                self.disruptor.uncordon(node)
                report.uncordoned.append(node)
        except TransientInfraError as e:
            logger.warning(f"Could not uncordon errored node {node}: {e}")
        return record

    def admit(self, record, report):
        """Grant a waiting node its slot"""
        node = record.node_id
        written = self.resolver.apply(node, advance(
            Phase.WAITING_FOR_ADMISSION, Phase.DRAINING, Writer.COORDINATOR, now=self.clock(),
        ))
        if written is not None and written.phase == Phase.DRAINING:
            logger.info(f"Admitted node {node} in partition {written.partition_key}")
            report.admitted.append(node)
        return written

    def drive_drain(self, record, report):
        """Cordon and drain an admitted node, then hand it to its agent.

        Safe to repeat after a restart: an already cordoned node is not
        cordoned again, and draining an empty node returns at once. The
        drain timeout counts from when the node entered Draining.
        """
        node = record.node_id
        remaining = self._drain_time_left(record)
        if remaining <= 0:
            message = f"still draining {self.config.drain_timeout:.0f}s after admission"
            logger.error(f"Drain of {node} timed out: {message}")
            return self._fail_drain(record, report, ErrorReason('drain timeout', message))

        if not self.disruptor.is_cordoned(node):
            self.disruptor.cordon(node)

        try:
            self.disruptor.drain(node, remaining)
        except DrainTimeoutError as e:
            logger.error(f"Drain of {node} timed out: {e}")
            return self._fail_drain(record, report, ErrorReason('drain timeout', str(e)))
        except DrainError as e:
            logger.error(f"Drain of {node} failed: {e}")
            return self._fail_drain(record, report, ErrorReason('drain failed', str(e)))

        written = self.resolver.apply(node, advance(
            Phase.DRAINING, Phase.UPDATING, Writer.COORDINATOR, now=self.clock(),
        ))
        if written is not None and written.phase == Phase.UPDATING:
            logger.info(f"Node {node} drained, agent may update")
            report.drained.append(node)
        return written

    def _drain_time_left(self, record):
        if record.phase_since is None:
            return self.config.drain_timeout
        elapsed = (self.clock() - record.phase_since).total_seconds()
        return self.config.drain_timeout - elapsed

    def _fail_drain(self, record, report, error):
        written = self.resolver.apply(record.node_id, advance(
            Phase.DRAINING, Phase.ERRORED, Writer.COORDINATOR, now=self.clock(), error=error,
        ))
        if written is not None and written.phase == Phase.ERRORED:
            report.errored.append(record.node_id)
            self.restore_schedulable(written, report)
        return written


def _reason(record):
    if record.last_error is None:
        return 'no reason recorded'
    return record.last_error.reason


def recover_node(resolver, node_id, clock=utcnow):
    """Operator action: return an Errored node to Idle so it can update again"""
    written = resolver.apply(node_id, advance(
        Phase.ERRORED, Phase.IDLE, Writer.OPERATOR, now=clock(),
    ))
    if written is None or written.phase != Phase.IDLE:
        phase = written.phase.value if written is not None else 'unregistered'
        raise FleetwatchError(f"Node {node_id} is {phase}, only Errored nodes can be recovered")
    logger.info(f"Node {node_id} recovered to Idle")
    return written
