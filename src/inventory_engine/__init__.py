"""Upstream sync engine for warehouse inventory, vendors and purchase orders."""

from inventory_engine.config import EngineSettings, UpstreamConfig, load_settings
from inventory_engine.db.models import SyncMode, SyncStatus, SyncType
from inventory_engine.orchestrator import SyncOrchestrator, SyncRequest, SyncResult
from inventory_engine.upstream.client import Resource, UpstreamClient

__version__ = "0.1.0"

__all__ = [
    "EngineSettings",
    "Resource",
    "SyncMode",
    "SyncOrchestrator",
    "SyncRequest",
    "SyncResult",
    "SyncStatus",
    "SyncType",
    "UpstreamClient",
    "UpstreamConfig",
    "load_settings",
]
