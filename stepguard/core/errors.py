"""
Error taxonomy shared by the credential, approval and deletion workflows.

Every error carries a stable machine-checkable ``kind`` and a human readable
``reason``. The API layer maps ``status_code`` straight onto the HTTP response.
"""


class StepGuardError(Exception):
    """Base class for workflow errors."""

    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, reason: str, kind: str = None, status_code: int = None):
        super().__init__(reason)
        self.reason = reason
        if kind is not None:
            self.kind = kind
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.kind, "message": self.reason}


class ValidationError(StepGuardError):
    """Malformed input. Fails fast, never retried."""

    kind = "validation_error"
    status_code = 400


class UnauthorizedError(StepGuardError):
    """Role denial or an invalid/expired secondary credential."""

    kind = "unauthorized"
    status_code = 401

    @classmethod
    def forbidden(cls, reason: str) -> "UnauthorizedError":
        return cls(reason, kind="forbidden", status_code=403)


class NotFoundError(StepGuardError):
    kind = "not_found"
    status_code = 404


class InvalidStateError(StepGuardError):
    """Transition attempted from a non-eligible state (race or stale view)."""

    kind = "invalid_state"
    status_code = 409

    @classmethod
    def already_deleted(cls, reason: str = "Item is already deleted") -> "InvalidStateError":
        return cls(reason, kind="already_deleted")


class ConflictError(StepGuardError):
    """Uniqueness violation reported by the store."""

    kind = "conflict"
    status_code = 409


class InfrastructureError(StepGuardError):
    """Store unavailable. Callers may retry with backoff."""

    kind = "infrastructure_error"
    status_code = 503
    retryable = True
