"""
Exceptions raised by fleetwatch components
"""


class FleetwatchError(Exception):
    """Base class for all fleetwatch errors"""


class ConfigError(FleetwatchError):
    """Invalid configuration value"""


class RecordNotFoundError(FleetwatchError):
    """The node has no record (or the node itself is gone)"""

    def __init__(self, node_id):
        self.node_id = node_id
        super().__init__(f"No record for node {node_id}")


class ConflictError(FleetwatchError):
    """Another writer updated the record since it was read"""

    def __init__(self, node_id, expected_revision):
        self.node_id = node_id
        self.expected_revision = expected_revision
        super().__init__(
            f"Record for node {node_id} changed since revision {expected_revision}"
        )


class TransientInfraError(FleetwatchError):
    """Network or API failure talking to the record store or cluster"""


class ConflictRetriesExhausted(TransientInfraError):
    """Conflicting writes kept winning for longer than the retry limit"""


class InvalidTransitionError(FleetwatchError):
    """A phase transition not in the transition table was attempted"""

    def __init__(self, from_phase, to_phase, writer):
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.writer = writer
        super().__init__(
            f"{writer.value} may not move a record from {from_phase.value} to {to_phase.value}"
        )


class DrainError(FleetwatchError):
    """Draining a node failed"""


class DrainTimeoutError(DrainError):
    """Draining a node did not finish within the drain timeout"""


class UpdateExecutionError(FleetwatchError):
    """The local update API failed to stage or apply an update"""
