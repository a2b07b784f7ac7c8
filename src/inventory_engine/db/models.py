from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from inventory_engine.clock import utcnow
from inventory_engine.db.base import PRIMARY_KEY_TYPE, Base


class SyncType(StrEnum):
    INVENTORY = "inventory"
    VENDORS = "vendors"
    PURCHASE_ORDERS = "purchase_orders"
    FULL = "full"


class SyncMode(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SMART = "smart"


class SyncStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.RUNNING


class UpstreamSyncStatus(StrEnum):
    NOT_SYNCED = "not_synced"
    SYNCED = "synced"
    ERROR = "error"


MONEY = Numeric(14, 4)


class Vendor(Base):
    __tablename__ = "vendors"

    id: Mapped[int] = mapped_column(PRIMARY_KEY_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    upstream_vendor_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True)
    contact_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    phone: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"Vendor(id={self.id!r}, name={self.name!r})"


class InventoryItem(Base):
    __tablename__ = "inventory_items"

    __table_args__ = (
        Index("ix_inventory_items_vendor_id", "vendor_id"),
        Index("ix_inventory_items_sync_priority", "sync_priority"),
    )

    id: Mapped[int] = mapped_column(PRIMARY_KEY_TYPE, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    product_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    vendor: Mapped[Optional[str]] = mapped_column(Text)
    vendor_id: Mapped[Optional[int]] = mapped_column(
        PRIMARY_KEY_TYPE, ForeignKey("vendors.id", ondelete="SET NULL")
    )
    location: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reorder_point: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sync_priority: Mapped[Optional[int]] = mapped_column(Integer)
    upstream_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"InventoryItem(id={self.id!r}, sku={self.sku!r}, stock={self.stock!r})"


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    __table_args__ = (Index("ix_purchase_orders_order_number", "order_number"),)

    id: Mapped[int] = mapped_column(PRIMARY_KEY_TYPE, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(128), nullable=False)
    vendor: Mapped[Optional[str]] = mapped_column(Text)
    vendor_id: Mapped[Optional[int]] = mapped_column(
        PRIMARY_KEY_TYPE, ForeignKey("vendors.id", ondelete="SET NULL")
    )
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    order_date: Mapped[Optional[date]] = mapped_column(Date)
    expected_date: Mapped[Optional[date]] = mapped_column(Date)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    upstream_order_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True)
    upstream_sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UpstreamSyncStatus.NOT_SYNCED.value
    )
    content_hash: Mapped[Optional[str]] = mapped_column(String(64))
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    upstream_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"PurchaseOrder(id={self.id!r}, order_number={self.order_number!r}, "
            f"upstream_order_id={self.upstream_order_id!r})"
        )


class SyncLog(Base):
    """One row per sync run. Rows are only ever inserted and then finished once."""

    __tablename__ = "sync_logs"

    __table_args__ = (
        # At most one running row per sync type; enforced by the database.
        Index(
            "uq_sync_logs_running_sync_type",
            "sync_type",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
        Index("ix_sync_logs_sync_type_started_at", "sync_type", "started_at"),
    )

    id: Mapped[int] = mapped_column(PRIMARY_KEY_TYPE, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(32), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncMode.INCREMENTAL.value)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncStatus.RUNNING.value)
    items_retrieved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_inserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    heartbeat_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    filter_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    run_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"SyncLog(id={self.id!r}, sync_type={self.sync_type!r}, "
            f"status={self.status!r})"
        )


__all__ = [
    "InventoryItem",
    "PurchaseOrder",
    "SyncLog",
    "SyncMode",
    "SyncStatus",
    "SyncType",
    "UpstreamSyncStatus",
    "Vendor",
]
