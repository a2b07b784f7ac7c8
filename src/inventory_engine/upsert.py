"""Idempotent, batched upserts keyed by natural key.

Every batch is split into new, changed and unchanged records by comparing
content hashes with what is stored. Only new and changed rows are written;
unchanged rows just get their ``last_synced_at`` refreshed. When a batch write
fails it is rolled back and replayed row by row so the failing identifiers can
be reported without losing the rest of the batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from math import ceil
from typing import Any, Callable, Iterable, Mapping, Sequence

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inventory_engine.change_detection import compute_hash, has_changed
from inventory_engine.clock import utcnow
from inventory_engine.db.models import InventoryItem, PurchaseOrder, UpstreamSyncStatus, Vendor
from inventory_engine.db.session import dialect_insert
from inventory_engine.records import (
    DomainRecord,
    InventoryRecord,
    PurchaseOrderRecord,
    VendorRecord,
)

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
ERROR_MESSAGE_CHARS = 300
NEVER_UPDATED = frozenset({"id", "created_at"})

RowExtras = Callable[[DomainRecord], Mapping[str, Any]]


@dataclass(frozen=True)
class ItemError:
    identifier: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"identifier": self.identifier, "message": self.message}


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    duplicates: int = 0
    failed: list[ItemError] = field(default_factory=list)

    def merge(self, other: "UpsertResult") -> "UpsertResult":
        self.inserted += other.inserted
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.duplicates += other.duplicates
        self.failed.extend(other.failed)
        return self


@dataclass(frozen=True)
class StoredState:
    content_hash: str | None
    last_synced_at: datetime | None


def _inventory_row(record: InventoryRecord) -> dict[str, Any]:
    return {
        "sku": record.sku,
        "product_name": record.product_name,
        "stock": record.stock,
        "cost": record.cost,
        "vendor": record.vendor,
        "location": record.location,
        "reorder_point": record.reorder_point,
        "reorder_quantity": record.reorder_quantity,
        "upstream_modified_at": record.upstream_modified_at,
    }


def _vendor_row(record: VendorRecord) -> dict[str, Any]:
    return {
        "name": record.name,
        "name_key": record.name_key,
        "upstream_vendor_id": record.upstream_vendor_id,
        "contact_name": record.contact_name,
        "email": record.email,
        "phone": record.phone,
        "is_active": record.is_active,
    }


def _purchase_order_row(record: PurchaseOrderRecord) -> dict[str, Any]:
    return {
        "upstream_order_id": record.upstream_order_id,
        "order_number": record.order_number,
        "vendor": record.vendor,
        "status": record.status,
        "order_date": record.order_date,
        "expected_date": record.expected_date,
        "total_amount": record.total_amount,
        "upstream_modified_at": record.upstream_modified_at,
        "upstream_sync_status": UpstreamSyncStatus.SYNCED.value,
    }


@dataclass(frozen=True)
class EntitySpec:
    """How one domain record type lands in its table.

    Rows whose ``key_column`` is empty are matched on ``fallback_key_column``
    instead. ``failure_values`` are written to an existing row whose update
    failed.
    """

    name: str
    model: type
    key_column: str
    build_row: Callable[[Any], dict[str, Any]]
    fallback_key_column: str | None = None
    failure_values: Mapping[str, Any] = field(default_factory=dict)

    @property
    def key(self):
        return getattr(self.model, self.key_column)

    def key_column_for(self, row: Mapping[str, Any]) -> str:
        if self.fallback_key_column and row.get(self.key_column) is None:
            return self.fallback_key_column
        return self.key_column

    def identifier(self, row: Mapping[str, Any]) -> str:
        return str(row[self.key_column_for(row)])


INVENTORY_SPEC = EntitySpec("inventory", InventoryItem, "sku", _inventory_row)
VENDOR_SPEC = EntitySpec(
    "vendors", Vendor, "upstream_vendor_id", _vendor_row, fallback_key_column="name_key"
)
PURCHASE_ORDER_SPEC = EntitySpec(
    "purchase_orders",
    PurchaseOrder,
    "upstream_order_id",
    _purchase_order_row,
    failure_values={"upstream_sync_status": UpstreamSyncStatus.ERROR.value},
)


def _short_error(exc: BaseException) -> str:
    cause = getattr(exc, "orig", None) or exc
    return str(cause).splitlines()[0][:ERROR_MESSAGE_CHARS] if str(cause) else type(cause).__name__


def _group_by(rows: Iterable[dict[str, Any]], column_for) -> dict[str, list[dict[str, Any]]]:
    groups: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        groups.setdefault(column_for(row), []).append(row)
    return groups


class UpsertEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        spec: EntitySpec,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.session_factory = session_factory
        self.spec = spec
        self.batch_size = batch_size
        self.logger = logger.bind(component="upsert_engine", entity=spec.name)

    async def load_state(
        self, keys: Iterable[str], *, column: str | None = None
    ) -> dict[str, StoredState]:
        """Stored hash and last sync time for each key that already exists."""

        key_list = list(dict.fromkeys(keys))
        if not key_list:
            return {}
        model = self.spec.model
        key_attr = getattr(model, column or self.spec.key_column)
        states: dict[str, StoredState] = {}
        async with self.session_factory() as session:
            for start in range(0, len(key_list), self.batch_size):
                chunk = key_list[start : start + self.batch_size]
                result = await session.execute(
                    select(key_attr, model.content_hash, model.last_synced_at).where(
                        key_attr.in_(chunk)
                    )
                )
                for key, content_hash, last_synced_at in result.all():
                    states[key] = StoredState(content_hash, last_synced_at)
        return states

    async def upsert_batch(
        self,
        records: Sequence[DomainRecord],
        *,
        dry_run: bool = False,
        now: datetime | None = None,
        row_extras: RowExtras | None = None,
    ) -> UpsertResult:
        """Apply ``records`` in chunks of ``batch_size``. Write failures never raise."""

        now = now or utcnow()
        # Last occurrence of a key wins.
        records = list(records)
        deduplicated = list({record.natural_key: record for record in records}.values())
        result = UpsertResult(duplicates=len(records) - len(deduplicated))
        total_chunks = ceil(len(deduplicated) / self.batch_size) if deduplicated else 0
        for index in range(total_chunks):
            chunk = deduplicated[index * self.batch_size : (index + 1) * self.batch_size]
            chunk_result = await self._apply_chunk(
                chunk, dry_run=dry_run, now=now, row_extras=row_extras
            )
            result.merge(chunk_result)
            self.logger.debug(
                "upsert_chunk_done",
                chunk=index + 1,
                total_chunks=total_chunks,
                inserted=chunk_result.inserted,
                updated=chunk_result.updated,
                unchanged=chunk_result.unchanged,
                failed=len(chunk_result.failed),
                dry_run=dry_run,
            )
        return result

    async def _apply_chunk(
        self,
        chunk: Sequence[DomainRecord],
        *,
        dry_run: bool,
        now: datetime,
        row_extras: RowExtras | None,
    ) -> UpsertResult:
        prepared = [(record, self.spec.build_row(record)) for record in chunk]
        stored: dict[str, StoredState] = {}
        for column, rows in _group_by((row for _, row in prepared), self.spec.key_column_for).items():
            stored.update(await self.load_state((row[column] for row in rows), column=column))

        new_rows: list[dict[str, Any]] = []
        changed_rows: list[dict[str, Any]] = []
        unchanged_rows: list[dict[str, Any]] = []
        for record, row in prepared:
            content_hash = compute_hash(record)
            state = stored.get(self.spec.identifier(row))
            if state is not None and not has_changed(content_hash, state.content_hash):
                unchanged_rows.append(row)
                continue
            if row_extras is not None:
                row.update(row_extras(record))
            # created_at only takes effect on insert; it is excluded from the conflict update.
            row.update(
                content_hash=content_hash, last_synced_at=now, updated_at=now, created_at=now
            )
            if state is None:
                new_rows.append(row)
            else:
                changed_rows.append(row)

        if dry_run:
            return UpsertResult(
                inserted=len(new_rows), updated=len(changed_rows), unchanged=len(unchanged_rows)
            )

        try:
            async with self.session_factory() as session:
                await self._write_rows(session, new_rows + changed_rows)
                await self._stamp_unchanged(session, unchanged_rows, now)
                await session.commit()
        except SQLAlchemyError as exc:
            self.logger.warning(
                "upsert_chunk_failed_retrying_per_row",
                rows=len(chunk),
                error=_short_error(exc),
            )
            return await self._apply_row_by_row(new_rows, changed_rows, unchanged_rows, now)

        return UpsertResult(
            inserted=len(new_rows), updated=len(changed_rows), unchanged=len(unchanged_rows)
        )

    async def _apply_row_by_row(
        self,
        new_rows: list[dict[str, Any]],
        changed_rows: list[dict[str, Any]],
        unchanged_rows: list[dict[str, Any]],
        now: datetime,
    ) -> UpsertResult:
        result = UpsertResult()
        for rows, counter in ((new_rows, "inserted"), (changed_rows, "updated")):
            for row in rows:
                identifier = self.spec.identifier(row)
                try:
                    async with self.session_factory() as session:
                        await self._write_rows(session, [row])
                        await session.commit()
                except SQLAlchemyError as exc:
                    message = _short_error(exc)
                    self.logger.error("upsert_row_failed", identifier=identifier, error=message)
                    result.failed.append(ItemError(identifier, message))
                    if counter == "updated":
                        await self._mark_failed(row)
                else:
                    setattr(result, counter, getattr(result, counter) + 1)

        if unchanged_rows:
            try:
                async with self.session_factory() as session:
                    await self._stamp_unchanged(session, unchanged_rows, now)
                    await session.commit()
            except SQLAlchemyError as exc:
                message = _short_error(exc)
                self.logger.error("upsert_stamp_failed", rows=len(unchanged_rows), error=message)
                result.failed.extend(
                    ItemError(self.spec.identifier(row), message) for row in unchanged_rows
                )
            else:
                result.unchanged += len(unchanged_rows)
        return result

    async def _write_rows(self, session: AsyncSession, rows: list[dict[str, Any]]) -> None:
        for column, group in _group_by(rows, self.spec.key_column_for).items():
            stmt = dialect_insert(session, self.spec.model)
            if stmt is None:
                await self._write_rows_orm(session, group, column)
                continue
            stmt = stmt.values(group)

            # A row matched on its fallback key never clears the primary key column.
            skipped = NEVER_UPDATED | {column, self.spec.key_column}
            update_columns = {
                name: stmt.excluded[name] for name in group[0] if name not in skipped
            }
            stmt = stmt.on_conflict_do_update(index_elements=[column], set_=update_columns)
            await session.execute(stmt)

    async def _write_rows_orm(
        self, session: AsyncSession, rows: list[dict[str, Any]], column: str
    ) -> None:
        # Dialects without native upsert: get-or-create per row.
        key_attr = getattr(self.spec.model, column)
        for row in rows:
            existing = (
                await session.execute(select(self.spec.model).where(key_attr == row[column]))
            ).scalar_one_or_none()
            if existing is None:
                session.add(self.spec.model(**row))
                continue
            for name, value in row.items():
                if name in NEVER_UPDATED or (name == self.spec.key_column and value is None):
                    continue
                setattr(existing, name, value)
        await session.flush()

    async def _stamp_unchanged(
        self, session: AsyncSession, rows: list[dict[str, Any]], now: datetime
    ) -> None:
        model = self.spec.model
        for column, group in _group_by(rows, self.spec.key_column_for).items():
            # updated_at is assigned to itself so its onupdate default does not fire.
            await session.execute(
                update(model)
                .where(getattr(model, column).in_([row[column] for row in group]))
                .values(last_synced_at=now, updated_at=model.updated_at)
                .execution_options(synchronize_session=False)
            )

    async def _mark_failed(self, row: dict[str, Any]) -> None:
        if not self.spec.failure_values:
            return
        column = self.spec.key_column_for(row)
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(self.spec.model)
                    .where(getattr(self.spec.model, column) == row[column])
                    .values(**self.spec.failure_values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            self.logger.error(
                "upsert_failure_mark_failed",
                identifier=self.spec.identifier(row),
                error=_short_error(exc),
            )

    async def delete_except(self, keep_keys: Iterable[str]) -> int:
        """Remove every row whose key is not in ``keep_keys``. Used by replace-all syncs only."""

        keep = list(set(keep_keys))
        async with self.session_factory() as session:
            stmt = delete(self.spec.model).execution_options(synchronize_session=False)
            if keep:
                stmt = stmt.where(self.spec.key.not_in(keep))
            result = await session.execute(stmt)
            await session.commit()
        removed = result.rowcount or 0
        self.logger.warning("replace_all_removed_rows", removed=removed)
        return removed


__all__ = [
    "EntitySpec",
    "INVENTORY_SPEC",
    "ItemError",
    "PURCHASE_ORDER_SPEC",
    "StoredState",
    "UpsertEngine",
    "UpsertResult",
    "VENDOR_SPEC",
]
