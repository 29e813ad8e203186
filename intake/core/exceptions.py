"""
Service-wide exception hierarchy.

Every service raises these types and nothing else for expected failures;
blueprints register one handler per type and get consistent HTTP status
codes and machine-readable ``ERR_*`` kinds everywhere.

Usage:
    from intake.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Workspace", resource_id=42)
    raise ValidationError("question_id is required", code=ValidationError.REQUIRED)

HTTP mapping (see intake/blueprints/conversation_bp.py):
    ValidationError    → 400
    AccessDeniedError  → 403
    NotFoundError      → 404
    ConsistencyError   → 500 (retryable)
    StoreError         → 500 (retryable)
"""


class IntakeError(Exception):
    """Base class; ``retryable`` tells callers whether a retry is safe."""

    retryable = False


class NotFoundError(IntakeError):
    """Raised when a referenced workspace or question does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Workspace", "Question").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(IntakeError):
    """Raised for missing or malformed input, always before any write.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
        code:    ``ValidationError.REQUIRED`` for a missing field,
                 ``ValidationError.INVALID`` (default) for a malformed one.
    """

    REQUIRED = "ERR_VALIDATION_REQUIRED"
    INVALID = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None, *, code: str = INVALID) -> None:
        self.details = details or {}
        self.code = code
        super().__init__(message)


class AccessDeniedError(IntakeError):
    """Raised when the caller is not owner, collaborator or admin of the workspace.

    Surfaced as 403; results are never silently filtered instead.
    """

    def __init__(self, message: str, *, user_id: int | None = None, scope_id: int | None = None) -> None:
        self.user_id = user_id
        self.scope_id = scope_id
        super().__init__(message)


class ConsistencyError(IntakeError):
    """Raised when an edit could not be applied as one unit.

    The transaction was rolled back, so the question still holds its pre-edit
    history.  Replaying the same edit is safe.
    """

    retryable = True

    def __init__(self, message: str, *, question_id: int | None = None, attempts: int = 0) -> None:
        self.question_id = question_id
        self.attempts = attempts
        super().__init__(message)


class StoreError(IntakeError):
    """Raised when the persistence layer fails (connection, constraint, timeout)."""

    retryable = True

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message)
