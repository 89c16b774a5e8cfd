import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from drasbot.logging_config import get_logger
from drasbot.services.command_registry import CommandDescriptor, CommandRegistry, bind_parameters
from drasbot.services.domain import (
    AdvanceContext,
    CompleteContext,
    ContextActions,
    ContextDirective,
    ConversationContext,
    HandlerCall,
    InboundMessage,
    User,
    UserUpdates,
    utcnow,
)
from drasbot.services.errors import (
    DirectiveError,
    DrasbotError,
    ErrorKind,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
)
from drasbot.services.permissions import has_level
from drasbot.services.ports import TemplateRenderer
from drasbot.services.result import PipelineResult, Route

logger = get_logger("dispatcher")

GENERIC_TEMPLATES = {
    ErrorKind.NOT_FOUND: "errors.unknown_command",
    ErrorKind.PERMISSION_DENIED: "errors.permission_denied",
    ErrorKind.RATE_LIMITED: "errors.rate_limited",
    ErrorKind.INTERNAL: "errors.internal",
    ErrorKind.TRANSPORT: "errors.internal",
}


@dataclass
class DispatchOutcome:
    result: PipelineResult
    directive: ContextDirective = None
    user_updates: Optional[UserUpdates] = None
    descriptor: Optional[CommandDescriptor] = None
    # (identity, command) plus the timestamp it replaced, for rollback
    cooldown_key: Optional[tuple[str, str]] = None
    previous_invocation: Optional[datetime] = None


class CommandCatalog:
    """Read-only view of the dispatcher handed to command handlers."""

    def __init__(self, dispatcher: "CommandDispatcher"):
        self._dispatcher = dispatcher

    @property
    def prefix(self) -> str:
        return self._dispatcher.prefix

    @property
    def cancel_token(self) -> str:
        return self._dispatcher.cancel_token

    def available_for(self, user: User) -> list[CommandDescriptor]:
        return self._dispatcher.available_for(user)

    def resolve(self, token: str) -> Optional[CommandDescriptor]:
        descriptor = self._dispatcher.registry.resolve(token)
        return descriptor if descriptor and descriptor.enabled else None

    def usage_stats(self) -> dict[str, int]:
        return self._dispatcher.usage_stats()


class CommandDispatcher:
    """Resolves command tokens, checks permission and cooldown, runs the handler."""

    def __init__(
        self,
        registry: CommandRegistry,
        renderer: TemplateRenderer,
        prefix: str = "!",
        cancel_token: str = "cancel",
    ):
        self._registry = registry
        self.renderer = renderer
        self.prefix = prefix
        self.cancel_token = cancel_token
        self._last_invocation: dict[tuple[str, str], datetime] = {}
        self._usage: Counter = Counter()
        self.catalog = CommandCatalog(self)

    @property
    def registry(self) -> CommandRegistry:
        return self._registry

    def replace_registry(self, registry: CommandRegistry) -> CommandRegistry:
        """Swap the whole registry. Runs already past resolution keep their descriptor."""
        previous, self._registry = self._registry, registry
        logger.info("Command registry replaced", extra={"context": {"commands": registry.names}})
        return previous

    def available_for(self, user: User) -> list[CommandDescriptor]:
        return [
            d
            for d in self._registry
            if d.enabled and not d.hidden and has_level(user.level, d.required_level)
        ]

    def usage_stats(self) -> dict[str, int]:
        return dict(self._usage)

    def cooldown_remaining(self, identity: str, descriptor: CommandDescriptor, now: datetime) -> float:
        if descriptor.cooldown_seconds <= 0:
            return 0.0
        last = self._last_invocation.get((identity, descriptor.name))
        if last is None:
            return 0.0
        elapsed = (now - last).total_seconds()
        return max(0.0, descriptor.cooldown_seconds - elapsed)

    def _render(self, user: User, key: str, **variables) -> str:
        return self.renderer.render(key, {"prefix": self.prefix, **variables}, language=user.language)

    def _bound_render(self, user: User) -> Callable[..., str]:
        def render(key: str, **variables) -> str:
            return self._render(user, key, **{"cancel": self.cancel_token, **variables})

        return render

    async def dispatch(
        self,
        token: str,
        args: list[str],
        user: User,
        *,
        message: InboundMessage,
        context: Optional[ConversationContext] = None,
        now: Optional[datetime] = None,
        render: Optional[Callable[..., str]] = None,
    ) -> DispatchOutcome:
        now = now or utcnow()
        registry = self._registry
        descriptor = registry.resolve(token)
        log_context = {"identity": user.identity, "command": descriptor.name if descriptor else token}

        try:
            self._check_access(descriptor, token, user, now)
        except DrasbotError as exc:
            if isinstance(exc, RateLimitedError):
                log_context["retry_after"] = exc.retry_after_seconds
            logger.info("Command refused", extra={"context": {**log_context, "kind": exc.kind.value}})
            known = descriptor if exc.kind != ErrorKind.NOT_FOUND else None
            return DispatchOutcome(
                result=PipelineResult.failed(
                    exc.kind,
                    reply_text=self._render(user, exc.template_key or GENERIC_TEMPLATES[exc.kind], **exc.variables),
                    detail=exc.message,
                    route=Route.COMMAND,
                    handled_by=known.name if known else None,
                ),
                descriptor=known,
            )

        try:
            params = bind_parameters(descriptor, args)
        except ValidationError as exc:
            return DispatchOutcome(
                result=self._validation_result(user, descriptor, exc),
                descriptor=descriptor,
            )

        outcome = DispatchOutcome(result=PipelineResult.ok(route=Route.COMMAND), descriptor=descriptor)
        self._record(outcome, user.identity, descriptor, now)

        call = HandlerCall(
            user=user,
            message=message,
            args=list(args),
            actions=ContextActions.for_command(),
            render=render or self._bound_render(user),
            context=context,
            catalog=self.catalog,
            params=params,
            now=now,
        )
        try:
            reply = await descriptor.handler(call)
            if isinstance(reply.directive, (AdvanceContext, CompleteContext)):
                raise DirectiveError(f"command {descriptor.name} returned {type(reply.directive).__name__}")
        except ValidationError as exc:
            self.rollback(outcome)
            outcome.result = self._validation_result(user, descriptor, exc)
            return outcome
        except DrasbotError as exc:
            self.rollback(outcome)
            logger.warning(
                "Command failed",
                extra={"context": {**log_context, "kind": exc.kind.value, "error": str(exc)}},
            )
            outcome.result = PipelineResult.failed(
                exc.kind,
                reply_text=self._render(user, exc.template_key or GENERIC_TEMPLATES[exc.kind], **exc.variables),
                detail=str(exc),
                route=Route.COMMAND,
                handled_by=descriptor.name,
            )
            return outcome
        except Exception as exc:
            self.rollback(outcome)
            logger.error(
                "Command handler crashed",
                exc_info=True,
                extra={"context": {**log_context, "error": str(exc)}},
            )
            outcome.result = PipelineResult.failed(
                ErrorKind.INTERNAL,
                reply_text=self._render(user, "errors.internal"),
                detail=f"{type(exc).__name__}: {exc}",
                route=Route.COMMAND,
                handled_by=descriptor.name,
            )
            return outcome

        outcome.result = PipelineResult.ok(reply.text, route=Route.COMMAND, handled_by=descriptor.name)
        outcome.directive = reply.directive
        outcome.user_updates = reply.user_updates
        logger.info("Command executed", extra={"context": log_context})
        return outcome

    def _check_access(
        self,
        descriptor: Optional[CommandDescriptor],
        token: str,
        user: User,
        now: datetime,
    ) -> None:
        if descriptor is None or not descriptor.enabled:
            raise NotFoundError(
                f"unknown command {token}",
                template_key="errors.unknown_command",
                variables={"command": token},
            )
        if not has_level(user.level, descriptor.required_level):
            raise PermissionDeniedError(f"{descriptor.name} requires {descriptor.required_level.label}")
        remaining = self.cooldown_remaining(user.identity, descriptor, now)
        if remaining > 0:
            seconds = math.ceil(remaining)
            raise RateLimitedError(
                f"cooldown {seconds}s",
                retry_after_seconds=seconds,
                template_key="errors.cooldown",
                variables={"command": descriptor.name, "seconds": seconds},
            )

    def _validation_result(self, user: User, descriptor: CommandDescriptor, exc: ValidationError) -> PipelineResult:
        if exc.template_key:
            text = self._render(user, exc.template_key, **exc.variables)
        else:
            text = exc.message
        return PipelineResult.failed(
            ErrorKind.VALIDATION,
            reply_text=text,
            detail=exc.message,
            route=Route.COMMAND,
            handled_by=descriptor.name,
        )

    def _record(self, outcome: DispatchOutcome, identity: str, descriptor: CommandDescriptor, now: datetime) -> None:
        key = (identity, descriptor.name)
        outcome.cooldown_key = key
        outcome.previous_invocation = self._last_invocation.get(key)
        self._last_invocation[key] = now
        self._usage[descriptor.name] += 1

    def rollback(self, outcome: DispatchOutcome) -> None:
        """Undo the cooldown stamp and usage count of an invocation that did not complete."""
        if outcome.cooldown_key is None:
            return
        key = outcome.cooldown_key
        if outcome.previous_invocation is None:
            self._last_invocation.pop(key, None)
        else:
            self._last_invocation[key] = outcome.previous_invocation
        name = key[1]
        self._usage[name] -= 1
        if self._usage[name] <= 0:
            del self._usage[name]
        outcome.cooldown_key = None
