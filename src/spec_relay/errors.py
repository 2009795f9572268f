"""Error taxonomy shared by the store, the operations layer and the transports."""

import sqlite3


class WorkflowError(Exception):
    """Base class for every error an operation reports to its caller."""

    code = "workflow_error"

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class ValidationError(WorkflowError):
    """A required field is missing or a value is outside its enumeration."""

    code = "validation_error"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["field"] = self.field
        return d


class NotFoundError(WorkflowError):
    """A referenced project, task, session or checkpoint does not exist."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind.capitalize()} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["kind"] = self.kind
        d["id"] = self.identifier
        return d


class ConstraintError(WorkflowError):
    """The store rejected a write: duplicate name or dangling foreign key."""

    code = "constraint_error"


class ImmutableCheckpointError(WorkflowError):
    """Checkpoints are snapshots and can never be modified."""

    code = "immutable_checkpoint"

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Workflow checkpoints cannot be updated: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


class InvalidStateError(WorkflowError):
    """Operation not allowed in the current workflow state."""

    code = "invalid_state"


class InternalError(WorkflowError):
    """Unexpected failure, wrapped at the operation boundary."""

    code = "internal_error"

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {type(cause).__name__}: {cause}")
        self.operation = operation


class MirrorError(Exception):
    """Writing the document mirror failed. Never fatal to an operation."""


def translate_integrity_error(
    exc: sqlite3.IntegrityError, context: str
) -> WorkflowError:
    """Map SQLite constraint failures onto the error taxonomy."""
    message = str(exc)
    if "UNIQUE constraint failed" in message:
        return ConstraintError(f"{context} already exists")
    if "FOREIGN KEY constraint failed" in message:
        return ConstraintError(f"{context} references a record that does not exist")
    if "CHECK constraint failed" in message:
        column = message.rsplit(":", 1)[-1].strip() or context
        return ValidationError(column, "value is not allowed")
    if "NOT NULL constraint failed" in message:
        column = message.rsplit(".", 1)[-1].strip()
        return ValidationError(column, "is required")
    return ConstraintError(f"{context}: {message}")
