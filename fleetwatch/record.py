"""
Node State Record - the per-node update lifecycle stored on the Node object

The record is a plain value. Every change goes through NodeRecord.transition()
or NodeRecord.evolve(), which return a new record and never touch the store.
"""
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from fleetwatch.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = 'fleetwatch.io/'
PHASE_ANNOTATION = ANNOTATION_PREFIX + 'phase'
DESIRED_VERSION_ANNOTATION = ANNOTATION_PREFIX + 'desired-version'
CURRENT_VERSION_ANNOTATION = ANNOTATION_PREFIX + 'current-version'
LAST_ERROR_ANNOTATION = ANNOTATION_PREFIX + 'last-error'
PARTITION_ANNOTATION = ANNOTATION_PREFIX + 'partition'
PHASE_SINCE_ANNOTATION = ANNOTATION_PREFIX + 'phase-since'
BOOT_ID_ANNOTATION = ANNOTATION_PREFIX + 'boot-id'


DEFAULT_PARTITION = 'default'


class Phase(str, Enum):
    IDLE = 'Idle'
    UPDATE_AVAILABLE = 'UpdateAvailable'
    WAITING_FOR_ADMISSION = 'WaitingForAdmission'
    DRAINING = 'Draining'
    UPDATING = 'Updating'
    REBOOTING = 'Rebooting'
    VERIFYING = 'Verifying'
    COMPLETED = 'Completed'
    ERRORED = 'Errored'


class Writer(str, Enum):
    AGENT = 'agent'
    COORDINATOR = 'coordinator'
    OPERATOR = 'operator'


# Phases that may fail into Errored, keyed to the side that owns them
ACTIVE_PHASE_OWNERS = {
    Phase.UPDATE_AVAILABLE: Writer.AGENT,
    Phase.WAITING_FOR_ADMISSION: Writer.AGENT,
    Phase.DRAINING: Writer.COORDINATOR,
    Phase.UPDATING: Writer.AGENT,
    Phase.REBOOTING: Writer.AGENT,
    Phase.VERIFYING: Writer.AGENT,
}

TRANSITIONS = {
    (Phase.IDLE, Phase.UPDATE_AVAILABLE): Writer.AGENT,
    (Phase.UPDATE_AVAILABLE, Phase.WAITING_FOR_ADMISSION): Writer.AGENT,
    (Phase.WAITING_FOR_ADMISSION, Phase.DRAINING): Writer.COORDINATOR,
    (Phase.DRAINING, Phase.UPDATING): Writer.COORDINATOR,
    (Phase.UPDATING, Phase.REBOOTING): Writer.AGENT,
    (Phase.REBOOTING, Phase.VERIFYING): Writer.AGENT,
    (Phase.VERIFYING, Phase.COMPLETED): Writer.AGENT,
    (Phase.COMPLETED, Phase.IDLE): Writer.COORDINATOR,
    (Phase.ERRORED, Phase.IDLE): Writer.OPERATOR,
}
TRANSITIONS.update({
    (phase, Phase.ERRORED): owner for phase, owner in ACTIVE_PHASE_OWNERS.items()
})

# Phases in which a node holds one of its partition's concurrency slots
SLOT_HOLDING_PHASES = frozenset({
    Phase.DRAINING,
    Phase.UPDATING,
    Phase.REBOOTING,
    Phase.VERIFYING,
    Phase.COMPLETED,
})

# Phases in which the node is being disrupted
DISRUPTED_PHASES = frozenset({
    Phase.DRAINING,
    Phase.UPDATING,
    Phase.REBOOTING,
    Phase.VERIFYING,
})


def writer_for(from_phase, to_phase):
    """Return the legitimate writer for a transition, or None if it is illegal"""
    return TRANSITIONS.get((from_phase, to_phase))


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ErrorReason:
    """Structured cause stored while a record is Errored"""
    reason: str
    message: str = ''

    def to_json(self):
        return json.dumps({'reason': self.reason, 'message': self.message}, sort_keys=True)

    @classmethod
    def from_json(cls, raw):
        try:
            data = json.loads(raw)
        except ValueError:
            # Hand-edited annotation, keep it readable
            return cls(reason=raw)
        if not isinstance(data, dict):
            return cls(reason=str(data))
        return cls(reason=str(data.get('reason', '')), message=str(data.get('message', '')))


@dataclass(frozen=True)
class NodeRecord:
    """One node's update lifecycle.

    `revision` is the store's optimistic-concurrency token for the snapshot
    this record was read from. It does not take part in equality, so a
    recomputed record equal to the one read means "nothing to write".
    """
    node_id: str
    phase: Phase = Phase.IDLE
    desired_version: Optional[str] = None
    current_version: Optional[str] = None
    last_error: Optional[ErrorReason] = None
    partition_key: str = DEFAULT_PARTITION
    phase_since: Optional[datetime] = None
    boot_id: Optional[str] = None
    revision: Optional[str] = field(default=None, compare=False)

    @property
    def holds_slot(self):
        return self.phase in SLOT_HOLDING_PHASES

    def transition(self, to_phase, writer, now=None, error=None, **changes):
        """Return a copy of this record moved to `to_phase`.

        Raises InvalidTransitionError when the move is not in the table or
        `writer` is not the side that owns it.
        """
        owner = writer_for(self.phase, to_phase)
        if owner is None or owner != writer:
            raise InvalidTransitionError(self.phase, to_phase, writer)

        if to_phase == Phase.ERRORED:
            if error is None:
                raise ValueError("Errored transitions require an error reason")
            changes['last_error'] = error
        else:
            changes['last_error'] = None

        changes['phase'] = to_phase
        changes['phase_since'] = now or utcnow()
        return replace(self, **changes)

    def evolve(self, **changes):
        """Return a copy with non-phase attributes changed"""
        if 'phase' in changes or 'phase_since' in changes:
            raise ValueError("Use transition() to change the phase")
        return replace(self, **changes)

    def to_annotations(self):
        """Encode as Node annotations. Unset attributes map to None (removal)."""
        return {
            PHASE_ANNOTATION: self.phase.value,
            DESIRED_VERSION_ANNOTATION: self.desired_version,
            CURRENT_VERSION_ANNOTATION: self.current_version,
            LAST_ERROR_ANNOTATION: self.last_error.to_json() if self.last_error else None,
            PARTITION_ANNOTATION: self.partition_key,
            PHASE_SINCE_ANNOTATION: self.phase_since.isoformat() if self.phase_since else None,
            BOOT_ID_ANNOTATION: self.boot_id,
        }

    @classmethod
    def from_annotations(cls, node_id, annotations, revision=None, labels=None,
                         partition_label=None):
        """Decode a record from Node annotations.

        Returns None when the node was never registered (no phase annotation).
        """
        annotations = annotations or {}
        raw_phase = annotations.get(PHASE_ANNOTATION)
        if raw_phase is None:
            return None

        try:
            phase = Phase(raw_phase)
        except ValueError:
            logger.warning(f"Node {node_id} has unknown phase {raw_phase!r}, treating as Errored")
            return cls(
                node_id=node_id,
                phase=Phase.ERRORED,
                last_error=ErrorReason('unknown phase', raw_phase),
                partition_key=_partition(annotations, labels, partition_label),
                revision=revision,
            )

        raw_error = annotations.get(LAST_ERROR_ANNOTATION)
        raw_since = annotations.get(PHASE_SINCE_ANNOTATION)

        return cls(
            node_id=node_id,
            phase=phase,
            desired_version=annotations.get(DESIRED_VERSION_ANNOTATION) or None,
            current_version=annotations.get(CURRENT_VERSION_ANNOTATION) or None,
            last_error=ErrorReason.from_json(raw_error) if raw_error else None,
            partition_key=_partition(annotations, labels, partition_label),
            phase_since=_parse_time(node_id, raw_since),
            boot_id=annotations.get(BOOT_ID_ANNOTATION) or None,
            revision=revision,
        )


def _partition(annotations, labels, partition_label):
    partition = annotations.get(PARTITION_ANNOTATION)
    if not partition and labels and partition_label:
        partition = labels.get(partition_label)
    return partition or DEFAULT_PARTITION


def _parse_time(node_id, raw):
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logger.warning(f"Node {node_id} has unparseable phase timestamp {raw!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
