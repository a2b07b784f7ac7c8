from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from inventory_engine.clock import as_utc
from inventory_engine.db.models import InventoryItem, PurchaseOrder, Vendor
from inventory_engine.records import InventoryRecord, PurchaseOrderRecord, VendorRecord
from inventory_engine.upsert import (
    INVENTORY_SPEC,
    PURCHASE_ORDER_SPEC,
    VENDOR_SPEC,
    UpsertEngine,
)

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=2)


def _items(**stock_overrides) -> list[InventoryRecord]:
    base = {"SKU-1": 4, "SKU-2": 0, "SKU-3": 17}
    base.update(stock_overrides)
    return [
        InventoryRecord(sku=sku, product_name=f"Item {sku}", stock=stock, cost=Decimal("2.50"))
        for sku, stock in base.items()
    ]


async def _rows(session_factory, model):
    async with session_factory() as session:
        return list((await session.execute(select(model))).scalars().all())


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_first_upsert_inserts_everything(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC, batch_size=2)

    result = await engine.upsert_batch(_items(), now=T0)

    assert (result.inserted, result.updated, result.unchanged) == (3, 0, 0)
    assert result.failed == []
    rows = {row.sku: row for row in await _rows(session_factory, InventoryItem)}
    assert rows["SKU-3"].stock == 17
    assert rows["SKU-1"].cost == Decimal("2.50")
    assert rows["SKU-1"].content_hash is not None


@pytest.mark.asyncio
async def test_reapplying_the_same_batch_changes_nothing(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC, batch_size=2)
    await engine.upsert_batch(_items(), now=T0)
    before = {
        row.sku: (row.content_hash, as_utc(row.updated_at))
        for row in await _rows(session_factory, InventoryItem)
    }

    result = await engine.upsert_batch(_items(), now=T1)

    assert (result.inserted, result.updated, result.unchanged) == (0, 0, 3)
    rows = await _rows(session_factory, InventoryItem)
    assert len(rows) == 3
    for row in rows:
        assert (row.content_hash, as_utc(row.updated_at)) == before[row.sku]
        assert as_utc(row.last_synced_at) == T1


@pytest.mark.asyncio
async def test_changed_record_is_updated_and_keeps_created_at(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC)
    await engine.upsert_batch(_items(), now=T0)

    result = await engine.upsert_batch(_items(**{"SKU-2": 12}), now=T1)

    assert (result.inserted, result.updated, result.unchanged) == (0, 1, 2)
    rows = {row.sku: row for row in await _rows(session_factory, InventoryItem)}
    assert rows["SKU-2"].stock == 12
    assert as_utc(rows["SKU-2"].created_at) == T0
    assert as_utc(rows["SKU-2"].updated_at) == T1
    assert as_utc(rows["SKU-1"].updated_at) == T0


@pytest.mark.asyncio
async def test_duplicate_keys_last_occurrence_wins(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC)
    records = [
        InventoryRecord(sku="SKU-1", stock=1),
        InventoryRecord(sku="SKU-2", stock=5),
        InventoryRecord(sku="SKU-1", stock=2),
    ]

    result = await engine.upsert_batch(records, now=T0)

    assert result.inserted == 2
    assert result.duplicates == 1
    rows = {row.sku: row for row in await _rows(session_factory, InventoryItem)}
    assert rows["SKU-1"].stock == 2


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC)

    result = await engine.upsert_batch(_items(), dry_run=True, now=T0)

    assert result.inserted == 3
    assert await _count(session_factory, InventoryItem) == 0


@pytest.mark.asyncio
async def test_failing_row_does_not_sink_the_batch(session_factory) -> None:
    engine = UpsertEngine(session_factory, VENDOR_SPEC, batch_size=10)
    records = [
        VendorRecord(name="Alpha", upstream_vendor_id="P1"),
        VendorRecord(name="ALPHA", upstream_vendor_id="P2"),
        VendorRecord(name="Gamma", upstream_vendor_id="P3"),
    ]

    result = await engine.upsert_batch(records, now=T0)

    assert result.inserted == 2
    assert result.duplicates == 0
    assert [error.identifier for error in result.failed] == ["P2"]
    names = sorted(row.name for row in await _rows(session_factory, Vendor))
    assert names == ["Alpha", "Gamma"]


@pytest.mark.asyncio
async def test_vendor_rename_updates_the_same_row(session_factory) -> None:
    engine = UpsertEngine(session_factory, VENDOR_SPEC)
    await engine.upsert_batch(
        [VendorRecord(name="Acme Supply", upstream_vendor_id="P1"), VendorRecord(name="Kelp Co")],
        now=T0,
    )
    (before,) = [row for row in await _rows(session_factory, Vendor) if row.upstream_vendor_id == "P1"]

    result = await engine.upsert_batch(
        [VendorRecord(name="Acme Supply Co", upstream_vendor_id="P1"), VendorRecord(name="Kelp Co")],
        now=T1,
    )

    assert (result.inserted, result.updated, result.unchanged) == (0, 1, 1)
    rows = {row.upstream_vendor_id: row for row in await _rows(session_factory, Vendor)}
    assert rows["P1"].id == before.id
    assert rows["P1"].name_key == "acme supply co"
    assert rows[None].name == "Kelp Co"


@pytest.mark.asyncio
async def test_row_extras_are_written(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC)

    await engine.upsert_batch(
        _items(), now=T0, row_extras=lambda record: {"sync_priority": 7 if record.stock == 0 else 3}
    )

    rows = {row.sku: row for row in await _rows(session_factory, InventoryItem)}
    assert rows["SKU-2"].sync_priority == 7
    assert rows["SKU-1"].sync_priority == 3


@pytest.mark.asyncio
async def test_purchase_orders_are_marked_synced(session_factory) -> None:
    engine = UpsertEngine(session_factory, PURCHASE_ORDER_SPEC)
    record = PurchaseOrderRecord(
        upstream_order_id="PO-1", order_number="PO-1", status="ORDER_COMMITTED", total_amount=Decimal("99.90")
    )

    result = await engine.upsert_batch([record], now=T0)

    assert result.inserted == 1
    (order,) = await _rows(session_factory, PurchaseOrder)
    assert order.upstream_sync_status == "synced"
    assert order.total_amount == Decimal("99.90")


@pytest.mark.asyncio
async def test_delete_except_keeps_listed_keys(session_factory) -> None:
    engine = UpsertEngine(session_factory, INVENTORY_SPEC)
    await engine.upsert_batch(_items(), now=T0)

    removed = await engine.delete_except({"SKU-1", "SKU-3"})

    assert removed == 1
    assert sorted(row.sku for row in await _rows(session_factory, InventoryItem)) == ["SKU-1", "SKU-3"]


def test_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        UpsertEngine(None, INVENTORY_SPEC, batch_size=0)


@pytest.mark.asyncio
async def test_failed_purchase_order_update_is_marked_error(session_factory) -> None:
    engine = UpsertEngine(session_factory, PURCHASE_ORDER_SPEC)
    record = PurchaseOrderRecord(upstream_order_id="PO-1", total_amount=Decimal("10.00"))
    await engine.upsert_batch([record], now=T0)

    result = await engine.upsert_batch(
        [record.model_copy(update={"total_amount": Decimal("12.00")})],
        now=T1,
        row_extras=lambda record: {"vendor_id": 999},
    )

    assert [error.identifier for error in result.failed] == ["PO-1"]
    assert result.updated == 0
    (order,) = await _rows(session_factory, PurchaseOrder)
    assert order.upstream_sync_status == "error"
    assert order.total_amount == Decimal("10.00")
