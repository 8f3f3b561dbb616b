"""Tests for MemoryRecordStore compare-and-swap semantics."""

from __future__ import annotations

import threading

import pytest

from fleetwatch.errors import ConflictError, RecordNotFoundError
from fleetwatch.record import NodeRecord, Phase


def test_unregistered_node_reads_as_none(store):
    revision = store.add_node('node-a')
    assert store.get('node-a') == (None, revision)


def test_unknown_node(store):
    with pytest.raises(RecordNotFoundError):
        store.get('missing')


def test_write_with_current_revision(store):
    revision = store.add_node('node-a')
    new_revision = store.update('node-a', revision, NodeRecord('node-a'))

    record, current = store.get('node-a')
    assert current == new_revision != revision
    assert record.phase == Phase.IDLE
    assert record.revision == new_revision


def test_stale_revision_conflicts(store):
    revision = store.add_node('node-a')
    store.update('node-a', revision, NodeRecord('node-a'))

    with pytest.raises(ConflictError):
        store.update('node-a', revision, NodeRecord('node-a', desired_version='2'))


def test_concurrent_writers_on_same_base_revision(store):
    """Only one of many writers racing on one base revision is accepted."""
    base = store.add_node('node-a')
    barrier = threading.Barrier(8)
    accepted = []
    conflicts = []

    def writer(i):
        barrier.wait()
        try:
            accepted.append(store.update('node-a', base, NodeRecord('node-a', desired_version=str(i))))
        except ConflictError:
            conflicts.append(i)

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(accepted) == 1
    assert len(conflicts) == 7


def test_accepted_writes_strictly_ordered(store):
    revision = store.add_node('node-a')
    for i in range(5):
        revision = store.update('node-a', revision, NodeRecord('node-a', desired_version=str(i)))

    revisions = [int(new) for (_node, _base, new, _record) in store.history]
    bases = [base for (_node, base, _new, _record) in store.history]
    assert revisions == sorted(set(revisions))
    assert len(bases) == len(set(bases))


def test_list_all_skips_unregistered(store):
    store.add_node('node-b')
    revision = store.add_node('node-a')
    store.update('node-a', revision, NodeRecord('node-a'))

    assert [r.node_id for r in store.list_all()] == ['node-a']


def test_watch_delivers_writes(store):
    revision = store.add_node('node-a')
    events = store.watch_all(timeout_seconds=2)

    writer = threading.Timer(0.05, store.update, args=('node-a', revision, NodeRecord('node-a')))
    writer.start()
    event = next(events)
    events.close()
    writer.join()

    assert event.node_id == 'node-a'


def test_watch_times_out_quietly(store):
    assert list(store.watch_all(timeout_seconds=0.05)) == []
