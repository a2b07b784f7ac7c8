from .base import Base
from .models import (
    InventoryItem,
    PurchaseOrder,
    SyncLog,
    SyncMode,
    SyncStatus,
    SyncType,
    UpstreamSyncStatus,
    Vendor,
)
from .session import create_engine, create_session_factory, dialect_insert, init_db

__all__ = [
    "Base",
    "InventoryItem",
    "PurchaseOrder",
    "SyncLog",
    "SyncMode",
    "SyncStatus",
    "SyncType",
    "UpstreamSyncStatus",
    "Vendor",
    "create_engine",
    "create_session_factory",
    "dialect_insert",
    "init_db",
]
