"""Core value types shared by the routing services."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from drasbot.services.errors import DirectiveError
from drasbot.services.permissions import PermissionLevel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class RateCounters:
    # Epoch seconds of recent hits, oldest first.
    command_hits: list[float] = field(default_factory=list)
    message_hits: list[float] = field(default_factory=list)
    notified_until: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "command_hits": list(self.command_hits),
            "message_hits": list(self.message_hits),
            "notified_until": self.notified_until,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RateCounters":
        data = data or {}
        return cls(
            command_hits=[float(x) for x in data.get("command_hits") or []],
            message_hits=[float(x) for x in data.get("message_hits") or []],
            notified_until=data.get("notified_until"),
        )


@dataclass
class User:
    identity: str
    level: PermissionLevel = PermissionLevel.USER
    display_name: Optional[str] = None
    is_registered: bool = False
    message_count: int = 0
    rate: RateCounters = field(default_factory=RateCounters)
    last_completed_context: Optional[str] = None
    last_completed_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_seen_at: Optional[datetime] = None

    @property
    def language(self) -> Optional[str]:
        return self.metadata.get("language")


@dataclass(frozen=True)
class RawMessage:
    """Inbound event as handed over by the transport."""

    sender: str
    text: Optional[str] = None
    timestamp: Union[datetime, int, float, None] = None
    message_type: str = "text"
    media_url: Optional[str] = None
    message_id: Optional[str] = None
    chat_id: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    identity: str
    text: str
    timestamp: datetime
    message_type: str = "text"
    media_url: Optional[str] = None
    message_id: Optional[str] = None
    chat_id: Optional[str] = None
    # Channel-side send time; ``timestamp`` is when we received it.
    sent_at: Optional[datetime] = None

    @property
    def normalized_text(self) -> str:
        return " ".join(self.text.split()).casefold()


@dataclass(frozen=True)
class ConversationContext:
    id: str
    identity: str
    context_type: str
    step: int
    payload: dict
    created_at: datetime
    last_touched_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.last_touched_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        # Equal to the TTL is still alive.
        return (now - self.last_touched_at).total_seconds() > self.ttl_seconds

    def touched(self, now: datetime) -> "ConversationContext":
        return replace(self, last_touched_at=now)


@dataclass(frozen=True)
class StartContext:
    context_type: str
    payload: dict = field(default_factory=dict)
    step: int = 0
    ttl_seconds: Optional[int] = None


@dataclass(frozen=True)
class AdvanceContext:
    context_type: str
    payload: dict
    step: Optional[int] = None


@dataclass(frozen=True)
class CompleteContext:
    context_type: str


ContextDirective = Union[StartContext, AdvanceContext, CompleteContext, None]


class ContextActions:
    """Narrow capability handed to handlers instead of the context manager.

    Commands and stateless handlers may only start a context. A context handler
    may only advance or complete contexts of its own type, and may start its own
    type when it is beginning a fresh flow.
    """

    def __init__(self, owner_type: Optional[str] = None, can_start: bool = True):
        self.owner_type = owner_type
        self.can_start = can_start

    @classmethod
    def for_command(cls) -> "ContextActions":
        return cls(owner_type=None, can_start=True)

    @classmethod
    def for_owner(cls, context_type: str, *, beginning: bool = False) -> "ContextActions":
        return cls(owner_type=context_type, can_start=beginning)

    def start(
        self,
        context_type: Optional[str] = None,
        payload: Optional[dict] = None,
        step: int = 0,
        ttl_seconds: Optional[int] = None,
    ) -> StartContext:
        if not self.can_start:
            raise DirectiveError("start is not allowed while a context is active")
        context_type = context_type or self.owner_type
        if not context_type:
            raise DirectiveError("start requires a context type")
        if self.owner_type and context_type != self.owner_type:
            raise DirectiveError(f"{self.owner_type} cannot start {context_type}")
        return StartContext(context_type=context_type, payload=dict(payload or {}), step=step, ttl_seconds=ttl_seconds)

    def advance(self, payload: dict, step: Optional[int] = None) -> AdvanceContext:
        if not self.owner_type or self.can_start:
            raise DirectiveError("advance is only available to an active context's handler")
        return AdvanceContext(context_type=self.owner_type, payload=dict(payload), step=step)

    def complete(self) -> CompleteContext:
        if not self.owner_type or self.can_start:
            raise DirectiveError("complete is only available to an active context's handler")
        return CompleteContext(context_type=self.owner_type)


@dataclass(frozen=True)
class UserUpdates:
    display_name: Optional[str] = None
    is_registered: Optional[bool] = None
    metadata: Optional[dict] = None

    def apply(self, user: User) -> None:
        if self.display_name is not None:
            user.display_name = self.display_name
        if self.is_registered is not None:
            user.is_registered = self.is_registered
        if self.metadata:
            user.metadata.update(self.metadata)


@dataclass(frozen=True)
class HandlerReply:
    text: Optional[str] = None
    directive: ContextDirective = None
    user_updates: Optional[UserUpdates] = None


@dataclass
class HandlerCall:
    user: User
    message: InboundMessage
    args: list[str]
    actions: ContextActions
    render: Callable[..., str]
    context: Optional[ConversationContext] = None
    catalog: Any = None
    params: dict = field(default_factory=dict)
    now: datetime = field(default_factory=utcnow)


Handler = Callable[[HandlerCall], Awaitable[HandlerReply]]


@dataclass(frozen=True)
class MessageLogEntry:
    identity: str
    direction: str  # inbound, outbound
    text: str
    created_at: datetime
    message_type: str = "text"
    route: Optional[str] = None
    processing_id: Optional[str] = None
    delivered: Optional[bool] = None


@dataclass(frozen=True)
class MessageWrites:
    """Everything one processed message persists, applied all-or-nothing."""

    user: User
    inbound: MessageLogEntry
    save_context: Optional[ConversationContext] = None
    delete_context: bool = False
