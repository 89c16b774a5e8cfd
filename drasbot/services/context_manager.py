"""Lifecycle of per-user conversation contexts.

A user has no context (NONE) or exactly one ACTIVE context. EXPIRED is never
stored: a context whose last touch is older than its TTL is treated as absent
on read and removed by the sweep or by the next write for that user.
"""

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from drasbot.logging_config import get_logger
from drasbot.services import state_machine
from drasbot.services.domain import (
    AdvanceContext,
    CompleteContext,
    ContextActions,
    ContextDirective,
    ConversationContext,
    HandlerCall,
    HandlerReply,
    StartContext,
    utcnow,
)
from drasbot.services.errors import DirectiveError, RegistryConflictError
from drasbot.services.keyed_lock import KeyedLock
from drasbot.services.ports import PersistencePort
from drasbot.services.result import ContextEffect
from drasbot.services.state_machine import ContextState

logger = get_logger("context_manager")


class ContextHandler:
    """Owner of one context type. Subclasses implement ``handle``."""

    context_type: str = ""
    ttl_seconds: Optional[int] = None
    cancel_token: Optional[str] = None

    async def begin(self, call: HandlerCall) -> HandlerReply:
        return HandlerReply(directive=call.actions.start(self.context_type))

    async def handle(self, call: HandlerCall) -> HandlerReply:
        raise NotImplementedError


@dataclass(frozen=True)
class ContextOp:
    """A pending change to one user's context slot, written by ``commit`` or with the message's writes."""

    identity: str
    effect: ContextEffect = ContextEffect.NONE
    save: Optional[ConversationContext] = None
    delete: bool = False


@dataclass(frozen=True)
class ContextLookup:
    context: Optional[ConversationContext] = None
    # Set when the stored context was found past its TTL.
    expired: Optional[ConversationContext] = None

    @property
    def state(self) -> ContextState:
        return ContextState.ACTIVE if self.context else ContextState.NONE


def find_invariant_violations(
    contexts: Iterable[ConversationContext],
    now: datetime,
    known_types: Optional[Iterable[str]] = None,
) -> list[str]:
    """Describe every broken store invariant. Empty list means healthy."""
    contexts = list(contexts)
    violations = []
    counts = Counter(c.identity for c in contexts)
    for identity, count in counts.items():
        if count > 1:
            violations.append(f"{identity}: {count} active contexts")
    known = set(known_types) if known_types is not None else None
    for context in contexts:
        if known is not None and context.context_type not in known:
            violations.append(f"{context.identity}: unknown context type {context.context_type}")
        if context.is_expired(now):
            violations.append(f"{context.identity}: expired {context.context_type} still stored")
    return violations


class ContextManager:
    def __init__(
        self,
        persistence: PersistencePort,
        locks: KeyedLock,
        handlers: Iterable[ContextHandler] = (),
        default_ttl_seconds: int = 300,
        cancel_token: str = "cancel",
        command_prefix: str = "!",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.persistence = persistence
        self.locks = locks
        self.default_ttl_seconds = default_ttl_seconds
        self.cancel_token = cancel_token
        self.command_prefix = command_prefix
        self.clock = clock
        self._handlers: dict[str, ContextHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: ContextHandler) -> None:
        if not handler.context_type:
            raise RegistryConflictError(f"{type(handler).__name__} has no context_type")
        if handler.context_type in self._handlers:
            raise RegistryConflictError(f"Context type already registered: {handler.context_type}")
        self._handlers[handler.context_type] = handler

    def handler_for(self, context_type: str) -> Optional[ContextHandler]:
        return self._handlers.get(context_type)

    @property
    def known_types(self) -> list[str]:
        return list(self._handlers)

    def actions_for(self, context_type: str, *, beginning: bool = False) -> ContextActions:
        return ContextActions.for_owner(context_type, beginning=beginning)

    def state_of(self, context: Optional[ConversationContext], now: datetime) -> ContextState:
        if context is None:
            return ContextState.NONE
        if context.is_expired(now):
            return ContextState.EXPIRED
        return ContextState.ACTIVE

    async def load_active(self, identity: str, now: Optional[datetime] = None) -> ContextLookup:
        """Read the user's context, treating an expired one as absent."""
        now = now or self.clock()
        context = await self.persistence.get_context(identity)
        state = self.state_of(context, now)
        if state == ContextState.EXPIRED:
            logger.info(
                "Context expired on access",
                extra={
                    "context": {
                        "identity": identity,
                        "context_type": context.context_type,
                        "expired_at": context.expires_at.isoformat(),
                    }
                },
            )
            return ContextLookup(context=None, expired=context)
        return ContextLookup(context=context)

    def is_cancellation(self, text: str, context: ConversationContext) -> bool:
        handler = self.handler_for(context.context_type)
        token = (handler.cancel_token if handler and handler.cancel_token else self.cancel_token).casefold()
        candidate = " ".join((text or "").split()).casefold()
        if self.command_prefix and candidate.startswith(self.command_prefix.casefold()):
            candidate = candidate[len(self.command_prefix):].strip()
        return candidate == token

    def open(
        self,
        identity: str,
        directive: StartContext,
        now: datetime,
        current: Optional[ConversationContext] = None,
    ) -> ContextOp:
        """NONE -> ACTIVE. ``current`` must be absent or expired."""
        if not isinstance(directive, StartContext):
            raise DirectiveError(f"cannot open a context from {type(directive).__name__}")
        state_machine.start(self._settle(current, now))
        handler = self.handler_for(directive.context_type)
        if handler is None:
            raise DirectiveError(f"no handler registered for context type {directive.context_type}")
        ttl = directive.ttl_seconds or handler.ttl_seconds or self.default_ttl_seconds
        context = ConversationContext(
            id=uuid.uuid4().hex,
            identity=identity,
            context_type=directive.context_type,
            step=directive.step,
            payload=dict(directive.payload),
            created_at=now,
            last_touched_at=now,
            ttl_seconds=int(ttl),
        )
        return ContextOp(identity=identity, effect=ContextEffect.STARTED, save=context)

    def apply(self, context: ConversationContext, directive: ContextDirective, now: datetime) -> ContextOp:
        """Turn the owning handler's directive into a pending change."""
        state = self.state_of(context, now)
        if directive is None:
            state_machine.advance(state)
            return ContextOp(identity=context.identity, effect=ContextEffect.TOUCHED, save=context.touched(now))
        if isinstance(directive, StartContext):
            raise DirectiveError(f"{context.context_type} handler tried to start {directive.context_type}")
        if directive.context_type != context.context_type:
            raise DirectiveError(f"{directive.context_type} cannot modify a {context.context_type} context")
        if isinstance(directive, AdvanceContext):
            state_machine.advance(state)
            step = directive.step if directive.step is not None else context.step + 1
            advanced = ConversationContext(
                id=context.id,
                identity=context.identity,
                context_type=context.context_type,
                step=step,
                payload=dict(directive.payload),
                created_at=context.created_at,
                last_touched_at=now,
                ttl_seconds=context.ttl_seconds,
            )
            return ContextOp(identity=context.identity, effect=ContextEffect.ADVANCED, save=advanced)
        if isinstance(directive, CompleteContext):
            state_machine.complete(state)
            return ContextOp(identity=context.identity, effect=ContextEffect.COMPLETED, delete=True)
        raise DirectiveError(f"unknown directive {directive!r}")

    def cancel(self, context: ConversationContext, now: datetime) -> ContextOp:
        state_machine.cancel(self.state_of(context, now))
        return ContextOp(identity=context.identity, effect=ContextEffect.CANCELLED, delete=True)

    def clear_on_error(self, context: ConversationContext) -> ContextOp:
        return ContextOp(identity=context.identity, effect=ContextEffect.CLEARED_ON_ERROR, delete=True)

    def discard_expired(self, context: ConversationContext) -> ContextOp:
        state_machine.discard(state_machine.expire(ContextState.ACTIVE))
        return ContextOp(identity=context.identity, effect=ContextEffect.EXPIRED, delete=True)

    async def commit(self, op: ContextOp) -> None:
        """Apply a pending change. Caller holds the user's lock."""
        if op.save is not None:
            await self.persistence.save_context(op.save)
        elif op.delete:
            await self.persistence.delete_context(op.identity)

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Delete every expired context, taking each user's lock first."""
        now = now or self.clock()
        removed = 0
        for candidate in await self.persistence.list_contexts():
            if not candidate.is_expired(now):
                continue
            async with self.locks.hold(candidate.identity):
                current = await self.persistence.get_context(candidate.identity)
                # Re-check under the lock: a run may have touched or replaced it.
                if current is None or current.id != candidate.id or not current.is_expired(now):
                    continue
                await self.commit(self.discard_expired(current))
                removed += 1
                logger.info(
                    "Context expired by sweep",
                    extra={"context": {"identity": current.identity, "context_type": current.context_type}},
                )
        return removed

    async def check_invariants(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self.clock()
        return find_invariant_violations(await self.persistence.list_contexts(), now, self.known_types)

    def _settle(self, current: Optional[ConversationContext], now: datetime) -> ContextState:
        state = self.state_of(current, now)
        if state == ContextState.EXPIRED:
            return state_machine.discard(state)
        return state
