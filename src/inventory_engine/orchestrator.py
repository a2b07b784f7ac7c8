"""Sync runs: page through the upstream, map, detect changes, upsert, log.

A run moves ``running -> success | partial | error``:

* ``error``: authentication failed, the run's first page could not be fetched or
  parsed, or nothing at all succeeded while failures occurred.
* ``partial``: some items (or later pages) failed but progress was made.
* ``success``: no errors and every retrieved item was processed.

At most one run per sync type is active. The in-process lock rejects
concurrent callers early; the partial unique index on ``sync_logs`` makes the
check atomic across processes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inventory_engine.change_detection import (
    calculate_sync_stats,
    compute_hash,
    compute_priority,
    has_changed,
)
from inventory_engine.clock import as_utc, utcnow
from inventory_engine.config import EngineSettings
from inventory_engine.db.models import SyncLog, SyncMode, SyncStatus, SyncType
from inventory_engine.errors import (
    RecordMappingError,
    SyncAlreadyRunningError,
    UpstreamError,
    is_fatal_upstream_error,
)
from inventory_engine.field_mapper import (
    map_inventory_record,
    map_purchase_order_record,
    map_vendor_record,
)
from inventory_engine.normalizer import normalize
from inventory_engine.records import DomainRecord, InventoryRecord, VendorRecord, vendor_name_key
from inventory_engine.sync_log import SyncLogRepository
from inventory_engine.upsert import (
    INVENTORY_SPEC,
    PURCHASE_ORDER_SPEC,
    VENDOR_SPEC,
    EntitySpec,
    ItemError,
    UpsertEngine,
    UpsertResult,
)
from inventory_engine.upstream.client import Resource, UpstreamClient
from inventory_engine.vendors import VendorReconciler

logger = structlog.get_logger(__name__)

MAX_LOGGED_ERRORS = 500


@dataclass(frozen=True)
class EntityPlan:
    name: str
    resource: Resource
    spec: EntitySpec
    mapper: Callable[[Mapping[str, Any]], DomainRecord]
    links_vendors: bool


VENDOR_PLAN = EntityPlan("vendors", Resource.PARTY, VENDOR_SPEC, map_vendor_record, False)
INVENTORY_PLAN = EntityPlan(
    "inventory", Resource.PRODUCT, INVENTORY_SPEC, map_inventory_record, True
)
PURCHASE_ORDER_PLAN = EntityPlan(
    "purchase_orders", Resource.ORDER, PURCHASE_ORDER_SPEC, map_purchase_order_record, True
)

SYNC_PLANS: dict[SyncType, tuple[EntityPlan, ...]] = {
    SyncType.VENDORS: (VENDOR_PLAN,),
    SyncType.INVENTORY: (INVENTORY_PLAN,),
    SyncType.PURCHASE_ORDERS: (PURCHASE_ORDER_PLAN,),
    # Vendors first so inventory and orders can link to them.
    SyncType.FULL: (VENDOR_PLAN, INVENTORY_PLAN, PURCHASE_ORDER_PLAN),
}


@dataclass(frozen=True)
class SyncRequest:
    sync_type: SyncType = SyncType.INVENTORY
    mode: SyncMode = SyncMode.INCREMENTAL
    full_resync: bool = False
    replace_all: bool = False
    filter_since: datetime | None = None
    dry_run: bool = False
    priority_threshold: int | None = None
    vendor_filter: str | None = None
    skus: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "sync_type", SyncType(self.sync_type))
        object.__setattr__(self, "mode", SyncMode(self.mode))
        object.__setattr__(self, "skus", tuple(self.skus))
        if self.replace_all:
            if self.effective_mode is not SyncMode.FULL:
                raise ValueError("replace_all requires a full sync")
            if self.sync_type not in (SyncType.INVENTORY, SyncType.FULL):
                raise ValueError("replace_all only applies to inventory")
            if self.vendor_filter or self.skus:
                raise ValueError("replace_all cannot be combined with vendor or SKU filters")

    @property
    def effective_mode(self) -> SyncMode:
        return SyncMode.FULL if self.full_resync else self.mode


@dataclass
class SyncResult:
    sync_type: SyncType
    mode: SyncMode
    status: SyncStatus
    log_id: int | None
    dry_run: bool
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    items_retrieved: int = 0
    items_processed: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is SyncStatus.SUCCESS

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_type": self.sync_type.value,
            "mode": self.mode.value,
            "status": self.status.value,
            "log_id": self.log_id,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "items_retrieved": self.items_retrieved,
            "items_processed": self.items_processed,
            "items_inserted": self.items_inserted,
            "items_updated": self.items_updated,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "errors": list(self.errors),
            "metadata": dict(self.metadata),
        }


@dataclass
class SyncStatusView:
    sync_type: SyncType
    running: SyncLog | None
    latest: SyncLog | None

    @property
    def is_running(self) -> bool:
        return self.running is not None


@dataclass
class _RunState:
    """Counters and errors accumulated over every page of a run."""

    retrieved: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    pages: int = 0
    fatal: bool = False
    errors: list[ItemError] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return self.inserted + self.updated + self.unchanged

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped

    def add_error(self, identifier: str, message: str, *, counts_as_item: bool = True) -> None:
        if counts_as_item:
            self.failed += 1
        self.errors.append(ItemError(identifier, message))

    def absorb(self, result: UpsertResult) -> None:
        self.inserted += result.inserted
        self.updated += result.updated
        self.unchanged += result.unchanged
        self.skipped += result.duplicates
        self.failed += len(result.failed)
        self.errors.extend(result.failed)

    def counters(self) -> dict[str, int]:
        return {
            "items_retrieved": self.retrieved,
            "items_processed": self.processed,
            "items_inserted": self.inserted,
            "items_updated": self.updated,
            "items_skipped": self.skipped + self.unchanged,
            "items_failed": self.failed,
        }

    def terminal_status(self) -> SyncStatus:
        if self.fatal:
            return SyncStatus.ERROR
        if self.errors:
            return SyncStatus.PARTIAL if self.processed > 0 else SyncStatus.ERROR
        if self.processed == self.retrieved:
            return SyncStatus.SUCCESS
        return SyncStatus.PARTIAL

    def error_dicts(self) -> list[dict[str, str]]:
        return [error.as_dict() for error in self.errors[:MAX_LOGGED_ERRORS]]


def _upstream_filters(plan: EntityPlan, request: SyncRequest) -> dict[str, str] | None:
    # Narrows the upstream query; results are still filtered locally.
    if request.vendor_filter and plan.spec is INVENTORY_SPEC:
        return {"filter": f"primaryVendor eq '{request.vendor_filter}'"}
    return None


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        settings: EngineSettings,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.settings = settings
        self.sync_logs = SyncLogRepository(session_factory)
        self.vendors = VendorReconciler(session_factory)
        self._locks: dict[SyncType, asyncio.Lock] = {}
        self.logger = logger.bind(component="sync_orchestrator")

    async def run(self, request: SyncRequest) -> SyncResult:
        """Run one sync. Raises :class:`SyncAlreadyRunningError` if one is in progress."""

        lock = self._locks.setdefault(request.sync_type, asyncio.Lock())
        if lock.locked():
            raise SyncAlreadyRunningError(request.sync_type.value)
        async with lock:
            return await self._run_locked(request)

    async def run_many(self, requests: Sequence[SyncRequest]) -> list[SyncResult | BaseException]:
        """Run distinct sync types concurrently."""

        return list(
            await asyncio.gather(*(self.run(request) for request in requests), return_exceptions=True)
        )

    async def status(self, sync_type: SyncType | str = SyncType.INVENTORY) -> SyncStatusView:
        sync_type = SyncType(sync_type)
        return SyncStatusView(
            sync_type=sync_type,
            running=await self.sync_logs.current_running(sync_type),
            latest=await self.sync_logs.latest_terminal(sync_type),
        )

    async def retry_failed(self, log_id: int, *, dry_run: bool = False) -> SyncResult | None:
        """Re-run an inventory sync restricted to the SKUs that failed in ``log_id``."""

        log = await self.sync_logs.get(log_id)
        if log is None:
            raise ValueError(f"Sync log {log_id} does not exist")
        skus = tuple(
            identifier
            for identifier in await self.sync_logs.failed_identifiers(log_id)
            if ":" not in identifier
        )
        if not skus:
            self.logger.info("retry_failed_nothing_to_do", log_id=log_id)
            return None
        return await self.run(
            SyncRequest(
                sync_type=SyncType.INVENTORY, mode=SyncMode.FULL, dry_run=dry_run, skus=skus
            )
        )

    async def _resolve_cutoff(self, request: SyncRequest) -> datetime | None:
        if request.effective_mode is not SyncMode.INCREMENTAL:
            return None
        if request.filter_since is not None:
            return as_utc(request.filter_since)
        return await self.sync_logs.last_successful_start(request.sync_type)

    async def _run_locked(self, request: SyncRequest) -> SyncResult:
        mode = request.effective_mode
        started_at = utcnow()
        clock_start = time.monotonic()
        cutoff = await self._resolve_cutoff(request)
        run_logger = self.logger.bind(
            sync_type=request.sync_type.value, mode=mode.value, dry_run=request.dry_run
        )

        state = _RunState()
        state.metadata.update(
            {
                "replace_all": request.replace_all,
                "entities": [plan.name for plan in SYNC_PLANS[request.sync_type]],
            }
        )
        if request.replace_all:
            run_logger.warning("replace_all_requested")

        log_id: int | None = None
        if not request.dry_run:
            log = await self.sync_logs.start_run(
                request.sync_type,
                mode,
                filter_since=cutoff,
                metadata=dict(state.metadata),
                now=started_at,
            )
            log_id = log.id
        run_logger = run_logger.bind(log_id=log_id)
        run_logger.info("sync_started", cutoff=cutoff.isoformat() if cutoff else None)

        try:
            for plan in SYNC_PLANS[request.sync_type]:
                await self._sync_entity(plan, request, mode, cutoff, state, log_id)
                if state.fatal:
                    break
        except (Exception, asyncio.CancelledError) as exc:
            state.fatal = True
            state.add_error("run", f"{type(exc).__name__}: {exc}", counts_as_item=False)
            await self._finish(request, mode, state, log_id, started_at, clock_start, run_logger)
            raise

        return await self._finish(request, mode, state, log_id, started_at, clock_start, run_logger)

    async def _finish(
        self,
        request: SyncRequest,
        mode: SyncMode,
        state: _RunState,
        log_id: int | None,
        started_at: datetime,
        clock_start: float,
        run_logger,
    ) -> SyncResult:
        completed_at = utcnow()
        duration_ms = int((time.monotonic() - clock_start) * 1000)
        status = state.terminal_status()
        stats = calculate_sync_stats(state.retrieved, state.inserted + state.updated, duration_ms)
        state.metadata["pages"] = state.pages
        state.metadata["stats"] = stats.as_dict()
        if len(state.errors) > MAX_LOGGED_ERRORS:
            state.metadata["errors_truncated"] = len(state.errors) - MAX_LOGGED_ERRORS
        counters = state.counters()

        if log_id is not None:
            await self.sync_logs.finish_run(
                log_id,
                status,
                counters=counters,
                errors=state.error_dicts(),
                duration_ms=duration_ms,
                metadata=dict(state.metadata),
                now=completed_at,
            )

        log_method = run_logger.info if status is SyncStatus.SUCCESS else run_logger.warning
        log_method(
            "sync_finished",
            status=status.value,
            duration_ms=duration_ms,
            errors=len(state.errors),
            **counters,
        )
        return SyncResult(
            sync_type=request.sync_type,
            mode=mode,
            status=status,
            log_id=log_id,
            dry_run=request.dry_run,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            errors=state.error_dicts(),
            metadata=dict(state.metadata),
            **counters,
        )

    async def _sync_entity(
        self,
        plan: EntityPlan,
        request: SyncRequest,
        mode: SyncMode,
        cutoff: datetime | None,
        state: _RunState,
        log_id: int | None,
    ) -> None:
        engine = UpsertEngine(self.session_factory, plan.spec, batch_size=self.settings.batch_size)
        page_size = self.settings.upstream.page_size
        entity_logger = self.logger.bind(entity=plan.name, log_id=log_id)
        filters = _upstream_filters(plan, request)
        seen_keys: set[str] = set()
        fetch_failed = False
        offset = 0
        page_number = 0

        while True:
            page_number += 1
            try:
                response = await self.client.fetch_page(
                    plan.resource,
                    limit=page_size,
                    offset=offset,
                    modified_since=cutoff,
                    filters=filters,
                )
                rows = list(normalize(response.payload))
            except UpstreamError as exc:
                fetch_failed = True
                identifier = f"{plan.name}:page:{page_number}"
                state.add_error(identifier, str(exc), counts_as_item=False)
                # Only the first page of the whole run is fatal; later entities degrade to partial.
                if is_fatal_upstream_error(exc) or state.pages == 0:
                    state.fatal = True
                entity_logger.error(
                    "sync_page_failed",
                    page=page_number,
                    offset=offset,
                    fatal=state.fatal,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                break

            state.pages += 1
            if not rows:
                break
            state.retrieved += len(rows)

            records = self._map_rows(plan, rows, offset, state)
            seen_keys.update(record.natural_key for record in records)
            records = self._apply_filters(records, request, cutoff, state)

            row_extras: dict[str, dict[str, Any]] = {}
            if mode is SyncMode.SMART and plan.spec is INVENTORY_SPEC and records:
                records = await self._prioritise(engine, records, request, state, row_extras)

            if plan.links_vendors and records:
                resolution = await self.vendors.resolve(
                    (getattr(record, "vendor", None) for record in records),
                    dry_run=request.dry_run,
                )
                if resolution.created:
                    state.metadata.setdefault("vendors_created", []).extend(resolution.created)
                for record in records:
                    row_extras.setdefault(record.natural_key, {})["vendor_id"] = (
                        resolution.vendor_id_for(getattr(record, "vendor", None))
                    )
            elif plan.spec is VENDOR_SPEC and records:
                await self.vendors.link_upstream_ids(
                    [record for record in records if isinstance(record, VendorRecord)],
                    dry_run=request.dry_run,
                )

            result = await engine.upsert_batch(
                records,
                dry_run=request.dry_run,
                row_extras=lambda record: row_extras.get(record.natural_key, {}),
            )
            state.absorb(result)

            if log_id is not None:
                await self.sync_logs.heartbeat(log_id, counters=state.counters())
            entity_logger.info(
                "sync_page_processed",
                page=page_number,
                offset=offset,
                rows=len(rows),
                inserted=result.inserted,
                updated=result.updated,
                unchanged=result.unchanged,
                failed=len(result.failed),
            )

            if len(rows) < page_size:
                break
            offset += page_size

        if request.replace_all and plan.spec is INVENTORY_SPEC:
            await self._replace_all(engine, seen_keys, fetch_failed, request, state, entity_logger)

    def _map_rows(
        self,
        plan: EntityPlan,
        rows: Sequence[Mapping[str, Any]],
        offset: int,
        state: _RunState,
    ) -> list[DomainRecord]:
        records: list[DomainRecord] = []
        for index, flat in enumerate(rows):
            try:
                records.append(plan.mapper(flat))
            except (RecordMappingError, ValidationError) as exc:
                identifier = getattr(exc, "identifier", None) or f"{plan.name}:offset:{offset + index}"
                message = str(exc).splitlines()[0]
                state.add_error(identifier, message)
                logger.warning("record_mapping_failed", identifier=identifier, error=message)
        return records

    def _apply_filters(
        self,
        records: list[DomainRecord],
        request: SyncRequest,
        cutoff: datetime | None,
        state: _RunState,
    ) -> list[DomainRecord]:
        wanted_skus = set(request.skus)
        vendor_key = vendor_name_key(request.vendor_filter) if request.vendor_filter else None
        kept: list[DomainRecord] = []
        for record in records:
            modified_at = as_utc(getattr(record, "upstream_modified_at", None))
            if cutoff is not None and modified_at is not None and modified_at <= cutoff:
                continue
            if isinstance(record, InventoryRecord):
                if wanted_skus and record.sku not in wanted_skus:
                    continue
                if vendor_key and vendor_name_key(record.vendor or "") != vendor_key:
                    continue
            kept.append(record)
        state.skipped += len(records) - len(kept)
        return kept

    async def _prioritise(
        self,
        engine: UpsertEngine,
        records: list[DomainRecord],
        request: SyncRequest,
        state: _RunState,
        row_extras: dict[str, dict[str, Any]],
    ) -> list[DomainRecord]:
        threshold = (
            request.priority_threshold
            if request.priority_threshold is not None
            else self.settings.priority_threshold
        )
        stored = await engine.load_state(record.natural_key for record in records)
        now = utcnow()
        scored: list[tuple[int, DomainRecord]] = []
        for record in records:
            if not isinstance(record, InventoryRecord):
                raise TypeError(f"smart mode scores inventory records, got {type(record).__name__}")
            previous = stored.get(record.natural_key)
            priority = compute_priority(
                record,
                is_new=previous is None,
                changed=previous is None
                or has_changed(compute_hash(record), previous.content_hash),
                last_synced_at=previous.last_synced_at if previous else None,
                now=now,
            )
            if priority >= threshold:
                scored.append((priority, record))
        scored.sort(key=lambda item: item[0], reverse=True)
        state.skipped += len(records) - len(scored)
        for priority, record in scored:
            row_extras.setdefault(record.natural_key, {})["sync_priority"] = priority
        return [record for _, record in scored]

    async def _replace_all(
        self,
        engine: UpsertEngine,
        seen_keys: set[str],
        fetch_failed: bool,
        request: SyncRequest,
        state: _RunState,
        entity_logger,
    ) -> None:
        if fetch_failed:
            entity_logger.warning("replace_all_skipped_incomplete_fetch")
            state.metadata["replace_all_removed"] = 0
            return
        if request.dry_run:
            async with self.session_factory() as session:
                stmt = select(func.count()).select_from(engine.spec.model)
                if seen_keys:
                    stmt = stmt.where(engine.spec.key.not_in(list(seen_keys)))
                removed = (await session.execute(stmt)).scalar_one()
        else:
            removed = await engine.delete_except(seen_keys)
        state.metadata["replace_all_removed"] = removed
        entity_logger.warning("replace_all_applied", removed=removed, dry_run=request.dry_run)


__all__ = [
    "EntityPlan",
    "SYNC_PLANS",
    "SyncOrchestrator",
    "SyncRequest",
    "SyncResult",
    "SyncStatusView",
]
