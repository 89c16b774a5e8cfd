from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from sqlalchemy.engine import Engine

from drasbot.config import Settings
from drasbot.database import build_engine, build_session_factory, init_db
from drasbot.logging_config import get_logger
from drasbot.services.bridge_service import BridgeTransport
from drasbot.services.command_registry import CommandDescriptor, CommandRegistry
from drasbot.services.context_manager import ContextHandler, ContextManager
from drasbot.services.context_sweeper import ContextSweeper
from drasbot.services.detectors import Detector, DetectorRegistry, DetectorSet
from drasbot.services.dispatcher import CommandDispatcher
from drasbot.services.domain import utcnow
from drasbot.services.handlers.auto_responses import build_default_detectors, fallback_reply
from drasbot.services.handlers.commands import build_default_commands
from drasbot.services.handlers.registration import RegistrationFlow
from drasbot.services.keyed_lock import KeyedLock
from drasbot.services.permissions import PermissionLevel
from drasbot.services.pipeline import PipelineCoordinator
from drasbot.services.ports import PersistencePort, TemplateRenderer, TransportPort
from drasbot.services.rate_limiter import RateLimiter
from drasbot.services.sql_store import SqlPersistence
from drasbot.services.templates import YamlTemplateRenderer
from drasbot.services.user_service import UserDirectory

logger = get_logger("container")


@dataclass
class Services:
    settings: Settings
    persistence: PersistencePort
    transport: TransportPort
    renderer: TemplateRenderer
    locks: KeyedLock
    contexts: ContextManager
    dispatcher: CommandDispatcher
    detectors: DetectorRegistry
    pipeline: PipelineCoordinator
    sweeper: ContextSweeper
    engine: Optional[Engine] = None

    def init_storage(self) -> None:
        if self.engine is not None:
            init_db(self.engine)

    async def close(self) -> None:
        await self.sweeper.stop()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.engine is not None:
            self.engine.dispose()


def build_services(
    settings: Settings,
    *,
    persistence: Optional[PersistencePort] = None,
    transport: Optional[TransportPort] = None,
    renderer: Optional[TemplateRenderer] = None,
    commands: Optional[Iterable[CommandDescriptor]] = None,
    detectors: Optional[Iterable[Detector]] = None,
    context_handlers: Optional[Iterable[ContextHandler]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Wire every service once. Anything passed in replaces the default."""
    engine = None
    if persistence is None:
        engine = build_engine(settings.database_url)
        persistence = SqlPersistence(build_session_factory(engine))
    if transport is None:
        transport = BridgeTransport(settings.bridge_url, timeout=settings.bridge_timeout_seconds)
    if renderer is None:
        path = Path(settings.templates_path) if settings.templates_path else None
        renderer = YamlTemplateRenderer(path, default_language=settings.default_language)

    locks = KeyedLock()
    contexts = ContextManager(
        persistence,
        locks,
        handlers=context_handlers if context_handlers is not None else [RegistrationFlow()],
        default_ttl_seconds=settings.context_default_ttl_seconds,
        cancel_token=settings.cancel_token,
        command_prefix=settings.command_prefix,
        clock=clock,
    )
    registry = CommandRegistry(
        commands if commands is not None else build_default_commands(),
        reserved=[settings.cancel_token],
    )
    dispatcher = CommandDispatcher(
        registry,
        renderer,
        prefix=settings.command_prefix,
        cancel_token=settings.cancel_token,
    )
    detector_registry = DetectorRegistry(
        DetectorSet(detectors if detectors is not None else build_default_detectors(settings.context_grace_seconds))
    )
    pipeline = PipelineCoordinator(
        persistence=persistence,
        transport=transport,
        renderer=renderer,
        directory=UserDirectory(
            persistence,
            default_level=PermissionLevel.parse(settings.default_user_level),
            super_admins=settings.super_admin_identities,
            allow_new_users=settings.allow_new_users,
        ),
        contexts=contexts,
        dispatcher=dispatcher,
        detectors=detector_registry,
        rate_limiter=RateLimiter(enabled=settings.rate_limits_enabled),
        locks=locks,
        fallback=fallback_reply if settings.fallback_enabled else None,
        command_prefix=settings.command_prefix,
        cancel_token=settings.cancel_token,
        max_message_length=settings.max_message_length,
        clock=clock,
    )
    sweeper = ContextSweeper(contexts, interval_seconds=settings.context_sweep_interval_seconds)
    logger.info(
        "Services built",
        extra={
            "context": {
                "commands": registry.names,
                "detectors": detector_registry.current.names,
                "context_types": contexts.known_types,
            }
        },
    )
    return Services(
        settings=settings,
        persistence=persistence,
        transport=transport,
        renderer=renderer,
        locks=locks,
        contexts=contexts,
        dispatcher=dispatcher,
        detectors=detector_registry,
        pipeline=pipeline,
        sweeper=sweeper,
        engine=engine,
    )
