"""Test doubles for the update platform, disruption API and clock"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fleetwatch.errors import UpdateExecutionError
from fleetwatch.health import HealthResult
from fleetwatch.platform import UpdatePlatform, UpdateStatus
from fleetwatch.record import NodeRecord, Phase


class FakeClock:
    """Controllable replacement for record.utcnow"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeDisruptor:
    """Records cordon/drain/uncordon calls against an in-memory schedulability map"""

    def __init__(self):
        self.cordoned = set()
        self.calls = []
        self.drain_failures = {}
        self.drain_timeouts = {}

    def is_cordoned(self, node_name):
        return node_name in self.cordoned

    def cordon(self, node_name):
        self.calls.append(('cordon', node_name))
        self.cordoned.add(node_name)

    def uncordon(self, node_name):
        self.calls.append(('uncordon', node_name))
        self.cordoned.discard(node_name)

    def drain(self, node_name, timeout):
        self.calls.append(('drain', node_name))
        self.drain_timeouts[node_name] = timeout
        failure = self.drain_failures.get(node_name)
        if failure is not None:
            raise failure

    def calls_for(self, node_name):
        return [action for action, node in self.calls if node == node_name]


class FakePlatform(UpdatePlatform):
    """Scriptable local update API"""

    def __init__(self, version='1.0.0', available=None):
        self.version = version
        self.available = available
        self.staged = None
        self.status = UpdateStatus.IDLE
        self.boot = 'boot-1'
        self.stage_error = None
        self.reboot_error = None
        self.check_calls = 0
        self.stage_calls = []
        self.reboots = 0

    def current_version(self):
        return self.version

    def check_for_update(self):
        self.check_calls += 1
        return self.available

    def stage_update(self, version):
        self.stage_calls.append(version)
        if self.stage_error is not None:
            self.status = UpdateStatus.FAILED
            raise UpdateExecutionError(self.stage_error)
        self.staged = version
        self.status = UpdateStatus.STAGED

    def report_status(self):
        return self.status

    def staged_version(self):
        return self.staged

    def reboot(self):
        if self.reboot_error is not None:
            raise UpdateExecutionError(self.reboot_error)
        self.reboots += 1

    def boot_id(self):
        return self.boot

    def complete_reboot(self):
        """Simulate the machine coming back on the staged version"""
        self.boot = f"boot-{self.reboots + 1}"
        self.version = self.staged
        self.status = UpdateStatus.APPLIED


def passing(record):
    return HealthResult(True, 'ok')


def failing(record):
    return HealthResult(False, 'service unhealthy')


def seed(store, node_id, phase=Phase.IDLE, partition='zone-a', since=None, **fields):
    """Add a node with a record already in `phase`"""
    revision = store.add_node(node_id)
    record = NodeRecord(
        node_id=node_id,
        phase=phase,
        partition_key=partition,
        phase_since=since,
        **fields,
    )
    return store.update(node_id, revision, record)
