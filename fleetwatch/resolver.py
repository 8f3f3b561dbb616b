"""
Conflict resolver - optimistic-concurrency retry discipline for record writes

Every write re-reads the record and recomputes the mutation against it, so a
mutation must be a function of the current record, never a blind delta.
"""
import logging
import random
import time
from dataclasses import replace

from fleetwatch.errors import (
    ConflictError,
    ConflictRetriesExhausted,
    InvalidTransitionError,
    TransientInfraError,
)

logger = logging.getLogger(__name__)


class Backoff:
    """Exponential backoff with proportional jitter"""

    def __init__(self, config, rng=None):
        self.config = config
        self.rng = rng or random.Random()

    def delay(self, attempt):
        delay = min(self.config.max, self.config.base * (2 ** attempt))
        if self.config.jitter:
            delay += delay * self.config.jitter * self.rng.uniform(-1, 1)
        return max(0.0, delay)


def advance(from_phase, to_phase, writer, now=None, error=None, **changes):
    """Build a mutation that moves a record from `from_phase` to `to_phase`.

    The mutation returns None (nothing to write) when the record is no
    longer in `from_phase`, i.e. another writer already moved it on.
    """
    def mutation(record):
        if record is None or record.phase != from_phase:
            return None
        return record.transition(to_phase, writer, now=now, error=error, **changes)

    mutation.__name__ = f"{from_phase.value}->{to_phase.value}"
    return mutation


class ConflictResolver:
    """Wraps RecordStore.update() with re-read and retry"""

    def __init__(self, store, config, sleep=time.sleep, rng=None):
        self.store = store
        self.config = config
        self.sleep = sleep
        self.conflict_backoff = Backoff(config.conflict_backoff, rng)
        self.infra_backoff = Backoff(config.infra_backoff, rng)

    def read(self, node_id):
        """Read a record, retrying transient failures"""
        failures = 0
        while True:
            try:
                record, _revision = self.store.get(node_id)
                return record
            except TransientInfraError as e:
                failures = self._infra_failure(node_id, failures, e)

    def apply(self, node_id, mutation):
        """Apply `mutation(record) -> record | None` to a node's record.

        Returns the record as written, or the current record when the
        mutation had nothing to change. Raises ConflictRetriesExhausted or
        TransientInfraError once the respective retry budget is spent.
        """
        name = getattr(mutation, '__name__', 'mutation')
        conflicts = 0
        failures = 0

        while True:
            try:
                record, revision = self.store.get(node_id)
                updated = mutation(record)
                if updated is None or updated == record:
                    logger.debug(f"{name} on {node_id}: nothing to write")
                    return record

                new_revision = self.store.update(node_id, revision, updated)
                logger.debug(f"{name} on {node_id}: written at revision {new_revision}")
                return replace(updated, revision=new_revision)

            except (ConflictError, InvalidTransitionError) as e:
                if conflicts >= self.config.conflict_retry_limit:
                    raise ConflictRetriesExhausted(
                        f"{name} on {node_id} still conflicting after {conflicts} retries: {e}"
                    ) from e
                delay = self.conflict_backoff.delay(conflicts)
                conflicts += 1
                logger.debug(f"{name} on {node_id} conflicted ({e}), retry {conflicts} in {delay:.2f}s")
                self.sleep(delay)

            except TransientInfraError as e:
                failures = self._infra_failure(node_id, failures, e)

    def _infra_failure(self, node_id, failures, error):
        if failures >= self.config.infra_retry_limit:
            logger.error(f"Giving up on {node_id} after {failures} infrastructure retries: {error}")
            raise error
        delay = self.infra_backoff.delay(failures)
        logger.warning(f"Record store error for {node_id}: {error}; retrying in {delay:.1f}s")
        self.sleep(delay)
        return failures + 1
