"""Per-message orchestration: normalize, identify, rate-limit, route, execute, emit.

Runs for one identity are serialized by a keyed lock held from identify until
every side effect of the message is applied. Stages only collect effects on
the run; nothing is written or sent before ``_emit``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from drasbot.logging_config import LoggerAdapter, bind_logger, get_logger
from drasbot.services.command_registry import ParsedCommand, parse_command
from drasbot.services.context_manager import ContextManager, ContextOp
from drasbot.services.detectors import CommandRoute, Detector, DetectorRegistry, HandlerRoute, StartContextRoute
from drasbot.services.dispatcher import CommandDispatcher, DispatchOutcome
from drasbot.services.domain import (
    AdvanceContext,
    CompleteContext,
    ContextActions,
    ConversationContext,
    Handler,
    HandlerCall,
    HandlerReply,
    InboundMessage,
    MessageLogEntry,
    MessageWrites,
    RawMessage,
    StartContext,
    User,
    ensure_aware,
    utcnow,
)
from drasbot.services.errors import DirectiveError, DrasbotError, ErrorKind, TransportError, ValidationError
from drasbot.services.keyed_lock import KeyedLock
from drasbot.services.ports import PersistencePort, TemplateRenderer, TransportPort
from drasbot.services.rate_limiter import RateLimiter
from drasbot.services.result import ContextEffect, PipelineResult, Result, Route
from drasbot.services.user_service import UserDirectory, normalize_identity

logger = get_logger("pipeline")


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    context: Optional[ConversationContext] = None
    detector: Optional[Detector] = None
    command: Optional[ParsedCommand] = None


@dataclass
class _Run:
    processing_id: str
    message: InboundMessage
    now: datetime
    log: LoggerAdapter
    user: Optional[User] = None
    # Stored context seen by routing, live or expired.
    current: Optional[ConversationContext] = None
    context_op: Optional[ContextOp] = None
    dispatch: Optional[DispatchOutcome] = None
    result: Optional[PipelineResult] = None


def _coerce_timestamp(value: Union[datetime, int, float, None]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    seconds = float(value)
    # Bridges send either seconds or milliseconds.
    if seconds > 1e11:
        seconds /= 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class PipelineCoordinator:
    def __init__(
        self,
        *,
        persistence: PersistencePort,
        transport: TransportPort,
        renderer: TemplateRenderer,
        directory: UserDirectory,
        contexts: ContextManager,
        dispatcher: CommandDispatcher,
        detectors: DetectorRegistry,
        rate_limiter: RateLimiter,
        locks: KeyedLock,
        fallback: Optional[Handler] = None,
        command_prefix: str = "!",
        cancel_token: str = "cancel",
        max_message_length: int = 4096,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.persistence = persistence
        self.transport = transport
        self.renderer = renderer
        self.directory = directory
        self.contexts = contexts
        self.dispatcher = dispatcher
        self.detectors = detectors
        self.rate_limiter = rate_limiter
        self.locks = locks
        self.fallback = fallback
        self.command_prefix = command_prefix
        self.cancel_token = cancel_token
        self.max_message_length = max_message_length
        self.clock = clock

    def normalize(self, raw: RawMessage) -> InboundMessage:
        identity = normalize_identity(raw.sender)
        if not identity:
            raise ValidationError("message has no sender")
        text = (raw.text or "").strip()
        if not text and raw.media_url is None and raw.message_type == "text":
            raise ValidationError("message has no content")
        if len(text) > self.max_message_length:
            raise ValidationError(f"message longer than {self.max_message_length} characters")
        try:
            sent_at = _coerce_timestamp(raw.timestamp)
        except (TypeError, ValueError, OverflowError, OSError):
            raise ValidationError(f"invalid timestamp {raw.timestamp!r}")
        return InboundMessage(
            identity=identity,
            text=text,
            timestamp=self.clock(),
            message_type=raw.message_type or "text",
            media_url=raw.media_url,
            message_id=raw.message_id,
            chat_id=raw.chat_id,
            sent_at=sent_at,
        )

    async def process(self, raw: RawMessage) -> PipelineResult:
        processing_id = uuid.uuid4().hex[:12]
        try:
            message = self.normalize(raw)
        except ValidationError as exc:
            logger.warning(
                "Inbound message rejected",
                extra={"context": {"processing_id": processing_id, "sender": raw.sender, "error": exc.message}},
            )
            return PipelineResult.failed(ErrorKind.VALIDATION, detail=exc.message, processing_id=processing_id)

        # No await between normalize and here: same-identity runs queue in arrival order.
        async with self.locks.hold(message.identity):
            run = _Run(
                processing_id=processing_id,
                message=message,
                now=self.clock(),
                log=bind_logger(logger, processing_id=processing_id, identity=message.identity),
            )
            return await self._process_locked(run)

    async def _process_locked(self, run: _Run) -> PipelineResult:
        stage = "identify"
        try:
            result = await self._identify(run)
            if result is None:
                stage = "rate_limit"
                result = self._rate_limit(run)
            if result is None:
                stage = "route"
                decision = await self._route(run)
                stage = "execute"
                result = await self._execute(run, decision)
        except DrasbotError as exc:
            result = self._classified_failure(run, stage, exc)
        except Exception as exc:
            return await self._abort(run, stage, exc)
        run.result = result
        return await self._emit(run)

    async def _identify(self, run: _Run) -> Optional[PipelineResult]:
        run.user = await self.directory.resolve(run.message.identity, run.now)
        return None

    def _rate_limit(self, run: _Run) -> Optional[PipelineResult]:
        is_command = bool(self.command_prefix) and run.message.text.startswith(self.command_prefix)
        decision = self.rate_limiter.check(run.user, run.now, is_command)
        if decision.allowed:
            return None
        run.log.info(
            "Rate limited",
            context={"scope": decision.scope, "retry_after": decision.retry_after_seconds, "notify": decision.notify},
        )
        reply = self._render(run, "errors.rate_limited", seconds=decision.retry_after_seconds) if decision.notify else None
        return PipelineResult.failed(
            ErrorKind.RATE_LIMITED,
            reply_text=reply,
            detail=f"{decision.scope} quota, retry in {decision.retry_after_seconds}s",
        )

    async def _route(self, run: _Run) -> RouteDecision:
        lookup = await self.contexts.load_active(run.message.identity, run.now)
        run.current = lookup.context or lookup.expired
        if lookup.expired is not None:
            run.context_op = self.contexts.discard_expired(lookup.expired)
        context = lookup.context
        if context is not None:
            if self.contexts.is_cancellation(run.message.text, context):
                return RouteDecision(route=Route.CANCEL, context=context)
            return RouteDecision(route=Route.CONTEXT, context=context)

        detector = self.detectors.current.evaluate(run.message, run.user)
        if detector is not None:
            return RouteDecision(route=Route.DETECTOR, detector=detector)

        parsed = parse_command(run.message.text, self.command_prefix)
        if parsed is not None:
            return RouteDecision(route=Route.COMMAND, command=parsed)
        return RouteDecision(route=Route.FALLBACK)

    async def _execute(self, run: _Run, decision: RouteDecision) -> PipelineResult:
        run.log.debug("Routed", context={"route": decision.route.value})
        if decision.route == Route.CANCEL:
            run.context_op = self.contexts.cancel(decision.context, run.now)
            run.log.info("Context cancelled", context={"context_type": decision.context.context_type})
            return PipelineResult.ok(
                self._render(run, "context.cancelled"),
                route=Route.CANCEL,
                context_effect=ContextEffect.CANCELLED,
                handled_by=decision.context.context_type,
            )
        if decision.route == Route.CONTEXT:
            return await self._continue_context(run, decision.context)
        if decision.route == Route.DETECTOR:
            return await self._run_detector(run, decision.detector)
        if decision.route == Route.COMMAND:
            return await self._dispatch(run, decision.command.name, decision.command.args, Route.COMMAND)
        if self.fallback is None:
            return self._with_expiry(run, PipelineResult.ok(route=Route.FALLBACK))
        return await self._run_stateless(run, self.fallback, "fallback", Route.FALLBACK)

    async def _continue_context(self, run: _Run, context: ConversationContext) -> PipelineResult:
        handler = self.contexts.handler_for(context.context_type)
        call = self._call(run, self.contexts.actions_for(context.context_type), context=context)
        try:
            if handler is None:
                raise DirectiveError(f"no handler registered for context type {context.context_type}")
            reply = await handler.handle(call)
            op = self.contexts.apply(context, reply.directive, run.now)
        except ValidationError as exc:
            run.context_op = self.contexts.apply(context, None, run.now)
            return PipelineResult.failed(
                ErrorKind.VALIDATION,
                reply_text=self._error_text(run, exc),
                detail=exc.message,
                route=Route.CONTEXT,
                context_effect=ContextEffect.TOUCHED,
                handled_by=context.context_type,
            )
        except Exception as exc:
            # The context is poisoned: drop it rather than reattach it next time.
            run.log.error(
                "Context handler failed, clearing context",
                exc_info=True,
                context={"context_type": context.context_type, "step": context.step, "error": str(exc)},
            )
            run.context_op = self.contexts.clear_on_error(context)
            return PipelineResult.failed(
                ErrorKind.INTERNAL,
                reply_text=self._render(run, "context.corrupted"),
                detail=f"{type(exc).__name__}: {exc}",
                route=Route.CONTEXT,
                context_effect=ContextEffect.CLEARED_ON_ERROR,
                handled_by=context.context_type,
            )

        run.context_op = op
        self._apply_user_changes(run, reply, op, context.context_type)
        return PipelineResult.ok(
            reply.text,
            route=Route.CONTEXT,
            context_effect=op.effect,
            handled_by=context.context_type,
        )

    async def _run_detector(self, run: _Run, detector: Detector) -> PipelineResult:
        run.log.info("Detector matched", context={"detector": detector.name, "priority": detector.priority})
        route = detector.route
        if isinstance(route, StartContextRoute):
            result = await self._begin_context(run, route)
        elif isinstance(route, HandlerRoute):
            result = await self._run_stateless(run, route.handler, route.name, Route.DETECTOR)
        elif isinstance(route, CommandRoute):
            args = run.message.text.split() if route.pass_words_as_args else []
            result = await self._dispatch(run, route.command, args, Route.DETECTOR)
        else:
            raise DirectiveError(f"detector {detector.name} has unknown route {route!r}")
        if result.handled_by is None:
            result.handled_by = detector.name
        return result

    async def _begin_context(self, run: _Run, route: StartContextRoute) -> PipelineResult:
        handler = self.contexts.handler_for(route.context_type)
        call = self._call(run, self.contexts.actions_for(route.context_type, beginning=True))
        call.params = dict(route.payload)
        try:
            if handler is None:
                raise DirectiveError(f"no handler registered for context type {route.context_type}")
            reply = await handler.begin(call)
            directive = reply.directive or StartContext(context_type=route.context_type, payload=dict(route.payload))
            op = self.contexts.open(run.message.identity, directive, run.now, current=run.current)
        except ValidationError as exc:
            return self._with_expiry(
                run,
                PipelineResult.failed(
                    ErrorKind.VALIDATION,
                    reply_text=self._error_text(run, exc),
                    detail=exc.message,
                    route=Route.DETECTOR,
                    handled_by=route.context_type,
                ),
            )
        except Exception as exc:
            run.log.error(
                "Context start failed",
                exc_info=True,
                context={"context_type": route.context_type, "error": str(exc)},
            )
            return self._with_expiry(
                run,
                PipelineResult.failed(
                    ErrorKind.INTERNAL,
                    reply_text=self._render(run, "errors.internal"),
                    detail=f"{type(exc).__name__}: {exc}",
                    route=Route.DETECTOR,
                    handled_by=route.context_type,
                ),
            )

        run.context_op = op
        self._apply_user_changes(run, reply, op, route.context_type)
        run.log.info("Context started", context={"context_type": route.context_type})
        return PipelineResult.ok(
            reply.text,
            route=Route.DETECTOR,
            context_effect=ContextEffect.STARTED,
            handled_by=route.context_type,
        )

    async def _run_stateless(self, run: _Run, handler: Handler, name: str, route: Route) -> PipelineResult:
        """Reply handlers with no context of their own; they may only start one."""
        call = self._call(run, ContextActions.for_command())
        try:
            reply = await handler(call)
            op = self._open_from(run, reply)
        except ValidationError as exc:
            return self._with_expiry(
                run,
                PipelineResult.failed(
                    ErrorKind.VALIDATION,
                    reply_text=self._error_text(run, exc),
                    detail=exc.message,
                    route=route,
                    handled_by=name,
                ),
            )
        except Exception as exc:
            run.log.error("Handler failed", exc_info=True, context={"handler": name, "error": str(exc)})
            return self._with_expiry(
                run,
                PipelineResult.failed(
                    ErrorKind.INTERNAL,
                    reply_text=self._render(run, "errors.internal"),
                    detail=f"{type(exc).__name__}: {exc}",
                    route=route,
                    handled_by=name,
                ),
            )
        if op is not None:
            run.context_op = op
        self._apply_user_changes(run, reply, op, None)
        return self._with_expiry(run, PipelineResult.ok(reply.text, route=route, handled_by=name))

    async def _dispatch(self, run: _Run, token: str, args: list[str], route: Route) -> PipelineResult:
        outcome = await self.dispatcher.dispatch(
            token,
            args,
            run.user,
            message=run.message,
            now=run.now,
            render=self._renderer_for(run.user),
        )
        run.dispatch = outcome
        result = outcome.result
        result.route = route
        if not result.success:
            return self._with_expiry(run, result)
        try:
            op = self._open_from(run, HandlerReply(directive=outcome.directive))
        except Exception as exc:
            self.dispatcher.rollback(outcome)
            run.log.error(
                "Command requested an invalid context",
                exc_info=True,
                context={"command": token, "error": str(exc)},
            )
            return self._with_expiry(
                run,
                PipelineResult.failed(
                    ErrorKind.INTERNAL,
                    reply_text=self._render(run, "errors.internal"),
                    detail=f"{type(exc).__name__}: {exc}",
                    route=route,
                    handled_by=result.handled_by,
                ),
            )
        if op is not None:
            run.context_op = op
        if outcome.user_updates is not None:
            outcome.user_updates.apply(run.user)
        return self._with_expiry(run, result)

    def _open_from(self, run: _Run, reply: HandlerReply) -> Optional[ContextOp]:
        directive = reply.directive
        if directive is None:
            return None
        if isinstance(directive, (AdvanceContext, CompleteContext)):
            raise DirectiveError(f"{type(directive).__name__} without an active context")
        return self.contexts.open(run.message.identity, directive, run.now, current=run.current)

    def _apply_user_changes(
        self,
        run: _Run,
        reply: HandlerReply,
        op: Optional[ContextOp],
        context_type: Optional[str],
    ) -> None:
        if reply.user_updates is not None:
            reply.user_updates.apply(run.user)
        if op is not None and op.effect == ContextEffect.COMPLETED and context_type:
            run.user.last_completed_context = context_type
            run.user.last_completed_at = run.now

    def _with_expiry(self, run: _Run, result: PipelineResult) -> PipelineResult:
        """Report a lazily expired context when nothing else touched the slot."""
        op = run.context_op
        if op is not None:
            if op.effect == ContextEffect.STARTED:
                result.context_effect = ContextEffect.STARTED
            elif op.effect == ContextEffect.EXPIRED and result.context_effect == ContextEffect.NONE:
                result.context_effect = ContextEffect.EXPIRED
        return result

    async def _emit(self, run: _Run) -> PipelineResult:
        result = run.result
        result.processing_id = run.processing_id
        message = run.message
        try:
            if run.user is not None:
                op = run.context_op
                await self.persistence.apply_writes(
                    MessageWrites(
                        user=run.user,
                        inbound=MessageLogEntry(
                            identity=message.identity,
                            direction="inbound",
                            text=message.text,
                            created_at=message.timestamp,
                            message_type=message.message_type,
                            route=result.route.value,
                            processing_id=run.processing_id,
                        ),
                        save_context=op.save if op else None,
                        delete_context=bool(op and op.delete),
                    )
                )
        except Exception as exc:
            return await self._abort(run, "emit", exc)

        if result.reply_text:
            sent = await self._deliver(run, result.reply_text)
            result.delivered = sent.ok
            if not sent.ok:
                result.success = False
                result.error_kind = ErrorKind.TRANSPORT
                result.error_detail = sent.error
            if run.user is not None:
                try:
                    await self.persistence.append_message_log(
                        MessageLogEntry(
                            identity=message.identity,
                            direction="outbound",
                            text=result.reply_text,
                            created_at=self.clock(),
                            route=result.route.value,
                            processing_id=run.processing_id,
                            delivered=sent.ok,
                        )
                    )
                except Exception as exc:
                    run.log.error("Outbound log write failed", exc_info=True, context={"error": str(exc)})
                    result.success = False
                    result.error_kind = result.error_kind or ErrorKind.INTERNAL
                    result.error_detail = result.error_detail or f"{type(exc).__name__}: {exc}"

        run.log.info(
            "Message processed",
            context={
                "route": result.route.value,
                "success": result.success,
                "context_effect": result.context_effect.value,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "delivered": result.delivered,
            },
        )
        return result

    async def _deliver(self, run: _Run, text: str) -> Result[str]:
        try:
            sent = await self.transport.send(run.message.identity, text)
        except TransportError as exc:
            sent = Result.failure(exc.message, exc.kind.value)
        except Exception as exc:
            run.log.error("Transport raised", exc_info=True, context={"error": str(exc)})
            sent = Result.failure(f"{type(exc).__name__}: {exc}", ErrorKind.TRANSPORT.value)
        if not sent.ok:
            run.log.warning("Reply not delivered", context={"error": sent.error})
        return sent

    def _classified_failure(self, run: _Run, stage: str, exc: DrasbotError) -> PipelineResult:
        run.log.warning(
            "Stage short-circuited",
            context={"stage": stage, "kind": exc.kind.value, "error": exc.message},
        )
        if exc.kind == ErrorKind.NOT_FOUND and stage == "identify":
            # Unknown identity: reply, but record nothing for it.
            run.user = None
        return PipelineResult.failed(exc.kind, reply_text=self._error_text(run, exc), detail=exc.message)

    async def _abort(self, run: _Run, stage: str, exc: Exception) -> PipelineResult:
        """Unclassified fault: nothing is persisted, the user gets a generic reply."""
        run.log.error(
            "Pipeline stage failed",
            exc_info=exc,
            context={"stage": stage, "error": f"{type(exc).__name__}: {exc}"},
        )
        if run.dispatch is not None:
            self.dispatcher.rollback(run.dispatch)
        reply = self._render(run, "errors.internal")
        result = PipelineResult.failed(
            ErrorKind.INTERNAL,
            reply_text=reply,
            detail=f"{stage}: {type(exc).__name__}: {exc}",
            processing_id=run.processing_id,
        )
        sent = await self._deliver(run, reply)
        result.delivered = sent.ok
        return result

    def _call(
        self,
        run: _Run,
        actions: ContextActions,
        context: Optional[ConversationContext] = None,
    ) -> HandlerCall:
        return HandlerCall(
            user=run.user,
            message=run.message,
            args=run.message.text.split(),
            actions=actions,
            render=self._renderer_for(run.user),
            context=context,
            catalog=self.dispatcher.catalog,
            now=run.now,
        )

    def _renderer_for(self, user: Optional[User]) -> Callable[..., str]:
        language = user.language if user else None

        def render(key: str, **variables) -> str:
            base = {"prefix": self.command_prefix, "cancel": self.cancel_token}
            return self.renderer.render(key, {**base, **variables}, language=language)

        return render

    def _render(self, run: _Run, key: str, **variables) -> str:
        return self._renderer_for(run.user)(key, **variables)

    def _error_text(self, run: _Run, exc: DrasbotError) -> str:
        if exc.kind == ErrorKind.VALIDATION and not exc.template_key:
            return exc.message
        key = exc.template_key or {
            ErrorKind.NOT_FOUND: "errors.unknown_user",
            ErrorKind.PERMISSION_DENIED: "errors.permission_denied",
            ErrorKind.RATE_LIMITED: "errors.rate_limited",
        }.get(exc.kind, "errors.internal")
        return self._render(run, key, **exc.variables)
