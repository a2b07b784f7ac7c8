"""Content hashing and change prioritisation.

Everything here is pure: no I/O, no clocks unless passed in.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from inventory_engine.clock import as_utc
from inventory_engine.records import DomainRecord, InventoryRecord

PRIORITY_NEW = 8
PRIORITY_BASE = 5
PRIORITY_OUT_OF_STOCK = 10
PRIORITY_LOW_STOCK = 9
PRIORITY_MAX = 10


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == 0:
            return "0"
        return format(value.normalize(), "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float):
        return _canonical(Decimal(str(value)))
    return value


def hash_payload(values: dict[str, Any]) -> str:
    payload = {key: _canonical(value) for key, value in values.items()}
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_hash(record: DomainRecord) -> str:
    """Hash exactly the tracked fields of ``record``.

    Key order and decimal formatting do not influence the result, and fields
    outside ``TRACKED_FIELDS`` (timestamps, upstream metadata) never do.
    """

    return hash_payload(record.tracked_values())


def has_changed(new_hash: str, stored_hash: str | None) -> bool:
    return stored_hash is None or new_hash != stored_hash


def compute_priority(
    record: InventoryRecord,
    *,
    is_new: bool,
    changed: bool,
    last_synced_at: datetime | None,
    now: datetime,
) -> int:
    """Score 0-10 used by smart syncs to order and filter work.

    Unchanged items score 0 and new items 8. A changed item starts at 5, is
    raised to 10 when out of stock or 9 at/below its reorder point, then gets
    +2 when last synced over a day ago (+1 over six hours), capped at 10.
    """

    if is_new:
        return PRIORITY_NEW
    if not changed:
        return 0

    priority = PRIORITY_BASE
    if record.stock == 0:
        priority = PRIORITY_OUT_OF_STOCK
    elif record.stock <= record.reorder_point:
        priority = PRIORITY_LOW_STOCK

    if last_synced_at is not None:
        elapsed = as_utc(now) - as_utc(last_synced_at)
        if elapsed > timedelta(hours=24):
            priority += 2
        elif elapsed > timedelta(hours=6):
            priority += 1
    return min(priority, PRIORITY_MAX)


@dataclass(frozen=True)
class SyncStats:
    change_rate: float
    items_per_second: float
    estimated_full_sync_seconds: float
    efficiency_gain: float

    def as_dict(self) -> dict[str, float]:
        return {
            "change_rate": round(self.change_rate, 2),
            "items_per_second": round(self.items_per_second, 2),
            "estimated_full_sync_seconds": round(self.estimated_full_sync_seconds, 2),
            "efficiency_gain": round(self.efficiency_gain, 2),
        }


def calculate_sync_stats(total_items: int, changed_items: int, duration_ms: int) -> SyncStats:
    """Efficiency figures for a run; zero inputs yield zeros instead of dividing by zero."""

    if total_items <= 0:
        return SyncStats(0.0, 0.0, 0.0, 0.0)
    change_rate = changed_items / total_items * 100
    efficiency_gain = (total_items - changed_items) / total_items * 100
    seconds = duration_ms / 1000
    items_per_second = changed_items / seconds if seconds > 0 else 0.0
    estimated = total_items / items_per_second if items_per_second > 0 else 0.0
    return SyncStats(change_rate, items_per_second, estimated, efficiency_gain)


__all__ = [
    "SyncStats",
    "calculate_sync_stats",
    "compute_hash",
    "compute_priority",
    "has_changed",
    "hash_payload",
]
