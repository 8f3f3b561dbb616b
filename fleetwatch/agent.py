"""
fleetwatch agent - per-node update reconciliation

Runs on each node. Reads its own node's record, and for phases it owns,
checks the local update API and node status and advances the record.
"""
import logging
import threading
from datetime import timedelta

from fleetwatch.errors import TransientInfraError, UpdateExecutionError
from fleetwatch.health import run_checks
from fleetwatch.platform import UpdateStatus
from fleetwatch.record import ErrorReason, NodeRecord, Phase, Writer, utcnow
from fleetwatch.resolver import advance

logger = logging.getLogger(__name__)


class UpdateAgent:
    """Drives one node's record through the phases the agent owns"""

    def __init__(self, node_name, resolver, platform, ready_check, health_checks, config,
                 partition_key=None, clock=utcnow):
        self.node_name = node_name
        self.resolver = resolver
        self.platform = platform
        self.ready_check = ready_check
        self.health_checks = list(health_checks)
        self.config = config
        self.partition_key = partition_key
        self.clock = clock

        self._last_update_check = None
        self._last_reboot_request = None
        self._stopped = threading.Event()

        self._handlers = {
            Phase.IDLE: self.handle_idle,
            Phase.UPDATE_AVAILABLE: self.handle_update_available,
            Phase.WAITING_FOR_ADMISSION: self.handle_waiting,
            Phase.UPDATING: self.handle_updating,
            Phase.REBOOTING: self.handle_rebooting,
            Phase.VERIFYING: self.handle_verifying,
        }

        logger.info(f"Agent initialized for node: {self.node_name}")

    def run(self, interval):
        """Main agent loop"""
        logger.info("Agent starting main loop")

        while not self._stopped.is_set():
            try:
                self.reconcile()
            except TransientInfraError as e:
                logger.warning(f"Reconcile cycle for {self.node_name} failed, will retry: {e}")
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            self._stopped.wait(interval)

    def stop(self):
        self._stopped.set()

    def reconcile(self):
        """Run one cycle against the current record"""
        record = self.resolver.read(self.node_name)
        if record is None:
            self.register()
            return

        handler = self._handlers.get(record.phase)
        if handler is None:
            logger.debug(f"Node {self.node_name} in {record.phase.value}, waiting on another writer")
            return
        handler(record)

    def register(self):
        """Create the node's record in Idle"""
        current = self.platform.current_version()
        partition = self.partition_key

        def create(record):
            if record is not None:
                return None
            fields = {'node_id': self.node_name, 'current_version': current, 'phase_since': self.clock()}
            if partition:
                fields['partition_key'] = partition
            return NodeRecord(**fields)

        create.__name__ = 'register'
        record = self.resolver.apply(self.node_name, create)
        logger.info(f"Registered node {self.node_name} at version {current} "
                    f"in partition {record.partition_key}")
        return record

    def _check_due(self):
        if self._last_update_check is None:
            return True
        elapsed = (self.clock() - self._last_update_check).total_seconds()
        return elapsed >= self.config.update_check_interval

    def handle_idle(self, record):
        if not self._check_due():
            return
        available = self.platform.check_for_update()
        self._last_update_check = self.clock()

        if not available or available == record.current_version:
            logger.debug(f"No update available for {self.node_name}")
            return

        logger.info(f"Update available for {self.node_name}: {record.current_version} -> {available}")
        self.resolver.apply(self.node_name, advance(
            Phase.IDLE, Phase.UPDATE_AVAILABLE, Writer.AGENT,
            now=self.clock(), desired_version=available,
        ))

    def handle_update_available(self, record):
        logger.info(f"Requesting update slot for {self.node_name} in partition {record.partition_key}")
        self.resolver.apply(self.node_name, advance(
            Phase.UPDATE_AVAILABLE, Phase.WAITING_FOR_ADMISSION, Writer.AGENT, now=self.clock(),
        ))

    def handle_waiting(self, record):
        if not self._check_due():
            return
        available = self.platform.check_for_update()
        self._last_update_check = self.clock()

        if not available or available == record.desired_version:
            return

        def refresh(current):
            if current is None or current.phase != Phase.WAITING_FOR_ADMISSION:
                return None
            return current.evolve(desired_version=available)

        refresh.__name__ = 'refresh-desired-version'
        logger.info(f"Target for {self.node_name} changed while waiting: {record.desired_version} -> {available}")
        self.resolver.apply(self.node_name, refresh)

    def handle_updating(self, record):
        desired = record.desired_version
        try:
            if self.platform.staged_version() != desired:
                self.platform.stage_update(desired)
            status = self.platform.report_status()
            if status not in (UpdateStatus.STAGED, UpdateStatus.APPLIED):
                raise UpdateExecutionError(f"Update {desired} reported {status.value} after staging")
            boot_id = self.platform.boot_id()
        except UpdateExecutionError as e:
            logger.error(f"Update of {self.node_name} to {desired} failed: {e}")
            self.fail(record.phase, ErrorReason('update failed', str(e)))
            return

        written = self.resolver.apply(self.node_name, advance(
            Phase.UPDATING, Phase.REBOOTING, Writer.AGENT, now=self.clock(), boot_id=boot_id,
        ))
        if written.phase == Phase.REBOOTING and written.boot_id == boot_id:
            self._reboot(written)

    def handle_rebooting(self, record):
        try:
            boot_id = self.platform.boot_id()
        except UpdateExecutionError as e:
            self.fail(record.phase, ErrorReason('update failed', str(e)))
            return

        if boot_id == record.boot_id:
            requested = [t for t in (record.phase_since, self._last_reboot_request) if t is not None]
            waited = float('inf')
            if requested:
                waited = (self.clock() - max(requested)).total_seconds()
            if waited < self.config.reboot_grace_period:
                logger.info(f"Node {self.node_name} has not rebooted yet ({waited:.0f}s)")
                return
            # Crashed or restarted before the reboot took effect
            logger.warning(f"Node {self.node_name} still on boot {boot_id} after {waited:.0f}s, rebooting again")
            self._reboot(record)
            return

        ready = self.ready_check(record)
        if not ready.passed:
            logger.info(f"Node {self.node_name} rebooted, waiting for readiness: {ready.message}")
            return

        logger.info(f"Node {self.node_name} is back after reboot, verifying")
        self.resolver.apply(self.node_name, advance(
            Phase.REBOOTING, Phase.VERIFYING, Writer.AGENT, now=self.clock(),
        ))

    def handle_verifying(self, record):
        result = run_checks(self.health_checks, record)
        if result.passed:
            logger.info(f"Node {self.node_name} verified at {record.desired_version}")
            self.resolver.apply(self.node_name, advance(
                Phase.VERIFYING, Phase.COMPLETED, Writer.AGENT,
                now=self.clock(), current_version=record.desired_version,
            ))
            return

        waited = timedelta(0)
        if record.phase_since is not None:
            waited = self.clock() - record.phase_since
        if waited.total_seconds() < self.config.verify_timeout:
            logger.info(f"Node {self.node_name} not healthy yet: {result.message}")
            return

        logger.error(f"Node {self.node_name} failed verification: {result.message}")
        self.fail(Phase.VERIFYING, ErrorReason('health check failed', result.message))

    def fail(self, from_phase, error):
        """Move the record to Errored from a phase the agent owns"""
        self.resolver.apply(self.node_name, advance(
            from_phase, Phase.ERRORED, Writer.AGENT, now=self.clock(), error=error,
        ))

    def _reboot(self, record):
        self._last_reboot_request = self.clock()
        try:
            self.platform.reboot()
        except UpdateExecutionError as e:
            logger.error(f"Reboot of {self.node_name} failed: {e}")
            self.fail(Phase.REBOOTING, ErrorReason('reboot failed', str(e)))

