"""Tests for post-update health checks."""

from __future__ import annotations

import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock

from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from fakes import FakePlatform, failing, passing
from fleetwatch.health import CommandCheck, HealthResult, NodeReadyCheck, VersionCheck, run_checks
from fleetwatch.record import NodeRecord, Phase

RECORD = NodeRecord('node-a', phase=Phase.VERIFYING, desired_version='1.1.0')


def node_with(*conditions):
    return SimpleNamespace(status=SimpleNamespace(conditions=[
        SimpleNamespace(type=t, status=s, message='') for t, s in conditions
    ]))


def test_node_ready():
    v1 = MagicMock()
    v1.read_node.return_value = node_with(('MemoryPressure', 'False'), ('Ready', 'True'))
    assert NodeReadyCheck(v1, 'node-a')(RECORD).passed


def test_node_not_ready():
    v1 = MagicMock()
    v1.read_node.return_value = node_with(('Ready', 'Unknown'))
    result = NodeReadyCheck(v1, 'node-a')(RECORD)
    assert not result.passed
    assert 'Unknown' in result.message


def test_node_unreadable():
    v1 = MagicMock()
    v1.read_node.side_effect = ApiException(status=500, reason='boom')
    assert not NodeReadyCheck(v1, 'node-a')(RECORD).passed


def test_node_unreachable():
    v1 = MagicMock()
    v1.read_node.side_effect = ProtocolError('connection reset')
    result = NodeReadyCheck(v1, 'node-a')(RECORD)
    assert not result.passed
    assert 'connection reset' in result.message


def test_version_check():
    platform = FakePlatform(version='1.1.0')
    assert VersionCheck(platform)(RECORD).passed

    platform.version = '1.0.0'
    result = VersionCheck(platform)(RECORD)
    assert not result.passed
    assert 'expected 1.1.0' in result.message


def test_command_check(monkeypatch):
    monkeypatch.setattr(
        'fleetwatch.health.subprocess.run',
        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 2, stdout='', stderr='db down'),
    )
    result = CommandCheck(['/opt/check'])(RECORD)
    assert result == HealthResult(False, '/opt/check exited 2: db down')


def test_run_checks_stops_at_first_failure():
    calls = []

    def tracking(record):
        calls.append('tracking')
        return HealthResult(True)

    result = run_checks([passing, failing, tracking], RECORD)
    assert result.message == 'service unhealthy'
    assert calls == []


def test_run_checks_all_pass():
    assert run_checks([passing, passing], RECORD).passed
