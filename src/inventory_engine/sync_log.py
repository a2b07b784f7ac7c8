from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inventory_engine.clock import as_utc, utcnow
from inventory_engine.db.models import SyncLog, SyncMode, SyncStatus, SyncType
from inventory_engine.errors import SyncAlreadyRunningError

logger = structlog.get_logger(__name__)

COUNTER_FIELDS = (
    "items_retrieved",
    "items_processed",
    "items_inserted",
    "items_updated",
    "items_skipped",
    "items_failed",
)
WATCHDOG_IDENTIFIER = "watchdog"


def _by_attribute(values: Mapping[str, Any]) -> dict[Any, Any]:
    return {getattr(SyncLog, name): value for name, value in values.items()}


def _counter_values(counters: Mapping[str, int] | None) -> dict[str, int]:
    if not counters:
        return {}
    unknown = set(counters) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown sync counters: {sorted(unknown)}")
    return dict(counters)


class SyncLogRepository:
    """All reads and writes of ``sync_logs``.

    A row is inserted as ``running`` and moved to a terminal status exactly
    once; every transition is a guarded ``UPDATE ... WHERE status = 'running'``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.logger = logger.bind(component="sync_log")

    async def start_run(
        self,
        sync_type: SyncType | str,
        mode: SyncMode | str,
        *,
        filter_since: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> SyncLog:
        """Insert a running row, or raise if one already exists for ``sync_type``."""

        now = now or utcnow()
        log = SyncLog(
            sync_type=SyncType(sync_type).value,
            mode=SyncMode(mode).value,
            status=SyncStatus.RUNNING.value,
            errors=[],
            started_at=now,
            heartbeat_at=now,
            filter_since=filter_since,
            run_metadata=metadata or {},
        )
        try:
            async with self.session_factory() as session:
                session.add(log)
                await session.commit()
        except IntegrityError as exc:
            running = await self.current_running(sync_type)
            raise SyncAlreadyRunningError(
                SyncType(sync_type).value, log_id=running.id if running else None
            ) from exc

        self.logger.info("sync_run_started", log_id=log.id, sync_type=log.sync_type, mode=log.mode)
        return log

    async def heartbeat(
        self,
        log_id: int,
        *,
        counters: Mapping[str, int] | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Refresh ``heartbeat_at`` and live counters. False if the run is no longer running."""

        values: dict[str, Any] = {"heartbeat_at": now or utcnow()}
        values.update(_counter_values(counters))
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.id == log_id, SyncLog.status == SyncStatus.RUNNING.value)
                .values(_by_attribute(values))
            )
            await session.commit()
        return result.rowcount == 1

    async def finish_run(
        self,
        log_id: int,
        status: SyncStatus | str,
        *,
        counters: Mapping[str, int] | None = None,
        errors: list[dict[str, str]] | None = None,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move a running row to its terminal ``status``. Returns False if it was already terminal."""

        status = SyncStatus(status)
        if not status.is_terminal:
            raise ValueError("finish_run requires a terminal status")
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": now or utcnow(),
            "errors": list(errors or []),
            "duration_ms": duration_ms,
        }
        values.update(_counter_values(counters))
        if metadata is not None:
            values["run_metadata"] = metadata

        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.id == log_id, SyncLog.status == SyncStatus.RUNNING.value)
                .values(_by_attribute(values))
            )
            await session.commit()

        finished = result.rowcount == 1
        if finished:
            self.logger.info(
                "sync_run_finished",
                log_id=log_id,
                status=status.value,
                errors=len(values["errors"]),
                duration_ms=duration_ms,
            )
        else:
            self.logger.warning("sync_run_already_terminal", log_id=log_id, status=status.value)
        return finished

    async def get(self, log_id: int) -> SyncLog | None:
        async with self.session_factory() as session:
            return await session.get(SyncLog, log_id)

    async def current_running(self, sync_type: SyncType | str) -> SyncLog | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncLog).where(
                    SyncLog.sync_type == SyncType(sync_type).value,
                    SyncLog.status == SyncStatus.RUNNING.value,
                )
            )
            return result.scalars().first()

    async def latest_terminal(self, sync_type: SyncType | str) -> SyncLog | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncLog)
                .where(
                    SyncLog.sync_type == SyncType(sync_type).value,
                    SyncLog.status != SyncStatus.RUNNING.value,
                )
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def last_successful_start(self, sync_type: SyncType | str) -> datetime | None:
        """``started_at`` of the newest successful run, the cutoff for incremental syncs."""

        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncLog.started_at)
                .where(
                    SyncLog.sync_type == SyncType(sync_type).value,
                    SyncLog.status == SyncStatus.SUCCESS.value,
                )
                .order_by(SyncLog.started_at.desc())
                .limit(1)
            )
            return as_utc(result.scalar_one_or_none())

    async def recent(self, limit: int = 10) -> list[SyncLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def failed_identifiers(self, log_id: int) -> list[str]:
        log = await self.get(log_id)
        if log is None:
            return []
        return [entry["identifier"] for entry in log.errors or [] if entry.get("identifier")]

    async def reap_stale(
        self, stale_after: timedelta, *, now: datetime | None = None
    ) -> list[int]:
        """Terminate running rows whose heartbeat is older than ``stale_after``."""

        now = now or utcnow()
        cutoff = now - stale_after
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncLog).where(
                    SyncLog.status == SyncStatus.RUNNING.value,
                    SyncLog.heartbeat_at < cutoff,
                )
            )
            stale = list(result.scalars().all())

        reaped: list[int] = []
        for log in stale:
            started_at = as_utc(log.started_at) or now
            minutes = int((now - started_at).total_seconds() // 60)
            errors = list(log.errors or []) + [
                {
                    "identifier": WATCHDOG_IDENTIFIER,
                    "message": f"Sync terminated after running for {minutes} minutes",
                }
            ]
            finished = await self.finish_run(
                log.id,
                SyncStatus.ERROR,
                errors=errors,
                duration_ms=int((now - started_at).total_seconds() * 1000),
                now=now,
            )
            if finished:
                reaped.append(log.id)
                self.logger.warning(
                    "stale_sync_terminated",
                    log_id=log.id,
                    sync_type=log.sync_type,
                    minutes=minutes,
                )
        return reaped


def log_to_dict(log: SyncLog | None) -> dict[str, Any] | None:
    if log is None:
        return None
    data: dict[str, Any] = {
        "id": log.id,
        "sync_type": log.sync_type,
        "mode": log.mode,
        "status": log.status,
        "errors": list(log.errors or []),
        "duration_ms": log.duration_ms,
        "metadata": dict(log.run_metadata or {}),
    }
    for name in COUNTER_FIELDS:
        data[name] = getattr(log, name)
    for name in ("started_at", "heartbeat_at", "completed_at", "filter_since"):
        value = as_utc(getattr(log, name))
        data[name] = value.isoformat() if value else None
    return data


__all__ = ["COUNTER_FIELDS", "SyncLogRepository", "log_to_dict"]
