import asyncio
from typing import Optional

from drasbot.logging_config import get_logger
from drasbot.services.context_manager import ContextManager

logger = get_logger("context_sweeper")


class ContextSweeper:
    """Background task that periodically expires stale contexts."""

    def __init__(self, contexts: ContextManager, interval_seconds: float = 60.0):
        self.contexts = contexts
        self.interval_seconds = max(interval_seconds, 0.1)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = await self.contexts.sweep()
        if removed:
            logger.info("Context sweep finished", extra={"context": {"removed": removed}})
        return removed

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Context sweep failed",
                    exc_info=True,
                    extra={"context": {"error": str(exc)}},
                )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Context sweeper started", extra={"context": {"interval_seconds": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Context sweeper stopped")
