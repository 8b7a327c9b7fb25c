"""Typed failures raised by the service layer.

Services never build HTTP responses. The handlers in ``promptworks.envelope``
are the single place where these are turned into the wire format.
"""
from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    error = "InternalServerError"
    # 5xx messages are replaced by a generic one unless exposed
    expose = False

    def __init__(self, message: str = "Internal server error", details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class DomainError(AppError):
    status_code = 400
    error = "BadRequest"


class NotFoundError(AppError):
    status_code = 404
    error = "NotFound"


class ForbiddenError(AppError):
    status_code = 403
    error = "Forbidden"


class ConflictError(AppError):
    status_code = 409
    error = "Conflict"


class PromptBannedError(ForbiddenError):
    error = "PromptBanned"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "violates content policy"
        super().__init__(f"Prompt has been banned: {self.reason}", details={"reason": self.reason})


class StageOutputError(DomainError):
    """Generation output did not match the shape the stage declares."""

    error = "StageOutputInvalid"


class ProviderError(AppError):
    """The generation provider failed or returned nothing usable."""

    status_code = 502
    error = "BadGateway"
    expose = True
