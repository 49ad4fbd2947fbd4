"""Errors raised by the orchestration core."""


class HiveError(Exception):
    """Base exception for orchestration errors."""

    pass


class RecordNotFoundError(HiveError, LookupError):
    """A persisted record does not exist."""

    kind = "Record"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"{self.kind} not found: {record_id}")


class CheckpointNotFoundError(RecordNotFoundError):
    kind = "Checkpoint"


class HandoffNotFoundError(RecordNotFoundError):
    kind = "Handoff"


class BranchNotFoundError(RecordNotFoundError):
    kind = "Branch"


class BranchTimeoutError(HiveError, TimeoutError):
    """Waiting for branches exceeded its budget. Branches keep running."""

    pass


class InvalidTransitionError(HiveError, ValueError):
    """A lifecycle status change would move backwards."""

    def __init__(self, subject: str, current: str, requested: str):
        self.subject = subject
        self.current = current
        self.requested = requested
        super().__init__(f"{subject}: cannot move from '{current}' to '{requested}'")
