from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from drasbot.services.errors import ErrorKind

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default


class ContextEffect(str, Enum):
    NONE = "none"
    STARTED = "started"
    ADVANCED = "advanced"
    TOUCHED = "touched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    CLEARED_ON_ERROR = "cleared_on_error"


class Route(str, Enum):
    CONTEXT = "context"
    CANCEL = "cancel"
    DETECTOR = "detector"
    COMMAND = "command"
    FALLBACK = "fallback"
    NONE = "none"


@dataclass
class PipelineResult:
    """Terminal value of one pipeline run. Never retried by the pipeline."""

    success: bool
    reply_text: Optional[str] = None
    route: Route = Route.NONE
    context_effect: ContextEffect = ContextEffect.NONE
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    delivered: bool = False
    processing_id: Optional[str] = None
    handled_by: Optional[str] = None

    @staticmethod
    def ok(reply_text: Optional[str] = None, **kwargs) -> "PipelineResult":
        return PipelineResult(success=True, reply_text=reply_text, **kwargs)

    @staticmethod
    def failed(kind: ErrorKind, reply_text: Optional[str] = None, detail: Optional[str] = None, **kwargs) -> "PipelineResult":
        return PipelineResult(success=False, reply_text=reply_text, error_kind=kind, error_detail=detail, **kwargs)

    @property
    def clears_context(self) -> bool:
        return self.context_effect in {
            ContextEffect.COMPLETED,
            ContextEffect.CANCELLED,
            ContextEffect.EXPIRED,
            ContextEffect.CLEARED_ON_ERROR,
        }
