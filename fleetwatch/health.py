"""
Post-update health checks

A check is any callable taking the record being verified and returning a
HealthResult. The agent runs its checks in order and stops at the first one
that does not pass.
"""
import logging
import subprocess
from dataclasses import dataclass

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from fleetwatch.errors import UpdateExecutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthResult:
    passed: bool
    message: str = ''


class NodeReadyCheck:
    """Passes when the node reports the Ready condition"""

    def __init__(self, v1, node_name):
        self.v1 = v1
        self.node_name = node_name

    def __call__(self, record):
        try:
            node = self.v1.read_node(self.node_name)
        except ApiException as e:
            return HealthResult(False, f"could not read node: {e.reason}")
        except HTTPError as e:
            return HealthResult(False, f"could not read node: {e}")

        for condition in (node.status.conditions or []):
            if condition.type == 'Ready':
                if condition.status == 'True':
                    return HealthResult(True, 'node is Ready')
                return HealthResult(False, f"node Ready={condition.status}: {condition.message or ''}")
        return HealthResult(False, 'node has no Ready condition')


class VersionCheck:
    """Passes when the platform runs the version the record asked for"""

    def __init__(self, platform):
        self.platform = platform

    def __call__(self, record):
        try:
            running = self.platform.current_version()
        except UpdateExecutionError as e:
            return HealthResult(False, str(e))
        if running != record.desired_version:
            return HealthResult(False, f"running {running}, expected {record.desired_version}")
        return HealthResult(True, f"running {running}")


class CommandCheck:
    """Passes when a site-specific command exits 0"""

    def __init__(self, cmd, timeout=60):
        self.cmd = list(cmd)
        self.timeout = timeout

    def __call__(self, record):
        try:
            result = subprocess.run(self.cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            return HealthResult(False, f"{self.cmd[0]} failed: {e}")
        if result.returncode != 0:
            return HealthResult(False, f"{self.cmd[0]} exited {result.returncode}: {result.stderr.strip()}")
        return HealthResult(True, result.stdout.strip())


def run_checks(checks, record):
    """Run checks in order; return the first failing result, or a passing one"""
    for check in checks:
        result = check(record)
        logger.debug(f"Health check {type(check).__name__} on {record.node_id}: {result}")
        if not result.passed:
            return result
    return HealthResult(True, 'all checks passed')
