import asyncio
from contextlib import suppress
from datetime import timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError

from inventory_engine.sync_log import SyncLogRepository

logger = structlog.get_logger(__name__)


class SyncWatchdog:
    """
    Background task that terminates runs whose heartbeat went stale, so a
    crashed worker cannot block its sync type forever.
    """

    def __init__(
        self,
        sync_logs: SyncLogRepository,
        stale_after: timedelta = timedelta(minutes=30),
        poll_interval: float = 60.0,
    ) -> None:
        self.sync_logs = sync_logs
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._running = False
        self._task: asyncio.Task | None = None
        self.logger = logger.bind(component="sync_watchdog")

    async def run(self) -> None:
        if self._running:
            return
        self._running = True
        self.logger.info("watchdog_started", stale_after_minutes=self.stale_after.total_seconds() / 60)
        try:
            while self._running:
                try:
                    await self.check_once()
                except SQLAlchemyError as exc:  # pragma: no cover - background worker safety
                    self.logger.error("watchdog_check_failed", error=str(exc))
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            self.logger.info("watchdog_cancelled")
            raise
        finally:
            self._running = False

    async def check_once(self) -> list[int]:
        reaped = await self.sync_logs.reap_stale(self.stale_after)
        if reaped:
            self.logger.warning("watchdog_reaped", log_ids=reaped)
        return reaped

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self.logger.info("watchdog_stopped")
