"""
Record store - versioned per-node records with compare-and-swap writes
"""
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace

from fleetwatch.errors import ConflictError, RecordNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordEvent:
    """A change notification. Delivery is at-least-once and may be stale."""
    node_id: str
    revision: str


class RecordStore(ABC):
    """Where Node State Records live.

    update() is the only mutation path. It succeeds only if
    `expected_revision` is still the node's current revision, otherwise it
    raises ConflictError. Failures reaching the store raise
    TransientInfraError.
    """

    @abstractmethod
    def get(self, node_id):
        """Return (record, revision). record is None if the node never registered."""

    @abstractmethod
    def update(self, node_id, expected_revision, record):
        """Write `record` if the node is still at `expected_revision`; return the new revision"""

    @abstractmethod
    def list_all(self):
        """Return a snapshot of every registered record"""

    @abstractmethod
    def watch_all(self, timeout_seconds):
        """Yield RecordEvents until `timeout_seconds` pass"""


class MemoryRecordStore(RecordStore):
    """In-process store with the same CAS semantics as the Kubernetes one"""

    def __init__(self):
        self._lock = threading.Lock()
        self._records = {}
        self._revisions = {}
        self._labels = {}
        self._counter = 0
        self._watchers = []
        self.history = []

    def _next_revision(self):
        self._counter += 1
        return str(self._counter)

    def add_node(self, node_id, labels=None):
        """Register a bare node (no record yet), as a kubelet joining would"""
        with self._lock:
            if node_id in self._revisions:
                return self._revisions[node_id]
            revision = self._next_revision()
            self._revisions[node_id] = revision
            self._labels[node_id] = dict(labels or {})
            self._records[node_id] = None
        self._notify(node_id, revision)
        return revision

    def get(self, node_id):
        with self._lock:
            if node_id not in self._revisions:
                raise RecordNotFoundError(node_id)
            revision = self._revisions[node_id]
            record = self._records[node_id]
        if record is not None:
            record = replace(record, revision=revision)
        return record, revision

    def update(self, node_id, expected_revision, record):
        with self._lock:
            if node_id not in self._revisions:
                raise RecordNotFoundError(node_id)
            if self._revisions[node_id] != expected_revision:
                raise ConflictError(node_id, expected_revision)
            revision = self._next_revision()
            stored = replace(record, node_id=node_id, revision=None)
            self._records[node_id] = stored
            self._revisions[node_id] = revision
            self.history.append((node_id, expected_revision, revision, stored))
        logger.debug(f"Stored record for {node_id} at revision {revision}: {stored.phase.value}")
        self._notify(node_id, revision)
        return revision

    def list_all(self):
        with self._lock:
            snapshot = [
                replace(record, revision=self._revisions[node_id])
                for node_id, record in self._records.items()
                if record is not None
            ]
        return sorted(snapshot, key=lambda r: r.node_id)

    def labels(self, node_id):
        with self._lock:
            return dict(self._labels.get(node_id, {}))

    def watch_all(self, timeout_seconds):
        events = queue.Queue()
        with self._lock:
            self._watchers.append(events)
        deadline = time.monotonic() + timeout_seconds
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                try:
                    yield events.get(timeout=remaining)
                except queue.Empty:
                    return
        finally:
            with self._lock:
                self._watchers.remove(events)

    def _notify(self, node_id, revision):
        event = RecordEvent(node_id=node_id, revision=revision)
        with self._lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            watcher.put(event)
