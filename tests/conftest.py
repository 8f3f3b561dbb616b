from __future__ import annotations

import pytest

from fakes import FakeClock, FakeDisruptor, FakePlatform
from fleetwatch.config import BackoffConfig, CoordinationConfig
from fleetwatch.resolver import ConflictResolver
from fleetwatch.store import MemoryRecordStore


@pytest.fixture
def settings():
    return CoordinationConfig(
        max_concurrent_per_partition=1,
        drain_timeout=30,
        conflict_retry_limit=3,
        conflict_backoff=BackoffConfig(base=0.01, max=0.1, jitter=0.1),
        infra_retry_limit=2,
        infra_backoff=BackoffConfig(base=1.0, max=10.0, jitter=0.0),
        verify_timeout=120,
        reboot_grace_period=60,
        update_check_interval=60,
        resync_interval=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def sleeps():
    """Backoff delays the resolver would have slept"""
    return []


@pytest.fixture
def resolver(store, settings, sleeps):
    return ConflictResolver(store, settings, sleep=sleeps.append)


@pytest.fixture
def disruptor():
    return FakeDisruptor()


@pytest.fixture
def platform():
    return FakePlatform()
