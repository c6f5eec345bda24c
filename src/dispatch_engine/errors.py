from __future__ import annotations


class DispatchError(Exception):
    """Base error for operations that abort a dispatch request."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DispatchError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(DispatchError):
    status_code = 403
    code = "FORBIDDEN"


class ConflictError(DispatchError):
    status_code = 409
    code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"
