from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    TRANSPORT = "transport_error"
    INTERNAL = "internal_error"


class DrasbotError(Exception):
    """Base for every classified failure crossing a stage boundary."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", *, template_key: Optional[str] = None, variables: Optional[dict] = None):
        self.message = message
        self.template_key = template_key
        self.variables = variables or {}
        super().__init__(message)


class ValidationError(DrasbotError):
    """Malformed input. The message is shown to the user as-is."""

    kind = ErrorKind.VALIDATION


class NotFoundError(DrasbotError):
    kind = ErrorKind.NOT_FOUND


class PermissionDeniedError(DrasbotError):
    kind = ErrorKind.PERMISSION_DENIED


class RateLimitedError(DrasbotError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "", *, retry_after_seconds: int = 0, **kwargs):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, **kwargs)


class TransportError(DrasbotError):
    kind = ErrorKind.TRANSPORT


class InternalError(DrasbotError):
    kind = ErrorKind.INTERNAL


class RegistryConflictError(Exception):
    """Duplicate or reserved command name/alias, raised while building a registry."""


class DirectiveError(InternalError):
    """A handler asked for a context change it is not allowed to make."""
