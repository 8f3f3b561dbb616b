"""
Local update API - what the agent uses to fetch, stage and boot OS updates
"""
import json
import logging
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from fleetwatch.errors import UpdateExecutionError

logger = logging.getLogger(__name__)


class UpdateStatus(str, Enum):
    IDLE = 'idle'
    STAGED = 'staged'
    APPLIED = 'applied'
    FAILED = 'failed'


class UpdatePlatform(ABC):
    """The node-local update mechanism"""

    @abstractmethod
    def current_version(self):
        """Version the node is running"""

    @abstractmethod
    def check_for_update(self):
        """Version available to move to, or None"""

    @abstractmethod
    def stage_update(self, version):
        """Download and stage `version`; raise UpdateExecutionError on failure"""

    @abstractmethod
    def report_status(self):
        """UpdateStatus of the most recent staging"""

    @abstractmethod
    def staged_version(self):
        """Version currently staged, or None"""

    @abstractmethod
    def reboot(self):
        """Boot into the staged update"""

    @abstractmethod
    def boot_id(self):
        """Identifier that changes on every boot"""


class CommandUpdatePlatform(UpdatePlatform):
    """Drives an updog-style update binary.

    Staging results are journaled under `state_dir` (a hostPath) so a
    restarted agent can tell staged, applied and failed updates apart.
    """

    def __init__(self, updog_path='/usr/bin/updog', state_dir='/var/lib/fleetwatch',
                 os_release='/etc/os-release', boot_id_path='/proc/sys/kernel/random/boot_id',
                 command_timeout=1800):
        self.updog_path = updog_path
        self.state_dir = Path(state_dir)
        self.os_release = Path(os_release)
        self.boot_id_path = Path(boot_id_path)
        self.command_timeout = command_timeout

        self.state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def _staged_file(self):
        return self.state_dir / 'staged.json'

    @property
    def _failed_file(self):
        return self.state_dir / 'failed.json'

    def _run(self, *args):
        cmd = [self.updog_path, *args]
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.command_timeout,
            )
        except subprocess.CalledProcessError as e:
            raise UpdateExecutionError(
                f"{' '.join(cmd)} exited with {e.returncode}: {(e.stderr or '').strip()}"
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise UpdateExecutionError(f"{' '.join(cmd)} failed: {e}") from e
        return result.stdout

    def current_version(self):
        try:
            lines = self.os_release.read_text().splitlines()
        except OSError as e:
            raise UpdateExecutionError(f"Cannot read {self.os_release}: {e}") from e

        for line in lines:
            key, _, value = line.partition('=')
            if key.strip() == 'VERSION_ID':
                return value.strip().strip('"')
        raise UpdateExecutionError(f"No VERSION_ID in {self.os_release}")

    def check_for_update(self):
        output = self._run('check-update', '--json')
        try:
            updates = json.loads(output or '[]')
        except ValueError as e:
            raise UpdateExecutionError(f"Unparseable check-update output: {output!r}") from e

        if isinstance(updates, dict):
            updates = [updates]
        for update in updates:
            version = update.get('version') if isinstance(update, dict) else None
            if version:
                return str(version)
        return None

    def stage_update(self, version):
        logger.info(f"Staging update to {version}")
        self._failed_file.unlink(missing_ok=True)
        try:
            self._run('update-image', '--image', version)
        except UpdateExecutionError as e:
            self._write_marker(self._failed_file, version, error=str(e))
            self._staged_file.unlink(missing_ok=True)
            raise
        self._write_marker(self._staged_file, version)
        logger.info(f"Update {version} staged")

    def report_status(self):
        if self._failed_file.exists():
            return UpdateStatus.FAILED

        staged = self._read_marker(self._staged_file)
        if staged is None:
            return UpdateStatus.IDLE
        if staged.get('version') == self.current_version():
            return UpdateStatus.APPLIED
        return UpdateStatus.STAGED

    def staged_version(self):
        if self._failed_file.exists():
            return None
        staged = self._read_marker(self._staged_file)
        return staged.get('version') if staged else None

    def reboot(self):
        logger.info("Applying staged update and rebooting")
        self._run('update-apply', '--reboot')

    def boot_id(self):
        try:
            return self.boot_id_path.read_text().strip()
        except OSError as e:
            raise UpdateExecutionError(f"Cannot read boot id: {e}") from e

    def _write_marker(self, path, version, **extra):
        with open(path, 'w') as f:
            json.dump({
                'version': version,
                'at': datetime.now(timezone.utc).isoformat(),
                **extra,
            }, f)

    def _read_marker(self, path):
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning(f"Ignoring corrupt marker {path}")
            return None
