from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inventory_engine.clock import utcnow
from inventory_engine.db.models import Vendor
from inventory_engine.db.session import dialect_insert
from inventory_engine.records import VendorRecord, vendor_name_key

logger = structlog.get_logger(__name__)


@dataclass
class VendorResolution:
    """Vendor ids keyed by ``name_key`` plus the names that were (or would be) created."""

    vendor_ids: dict[str, int] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)

    def vendor_id_for(self, name: str | None) -> int | None:
        if not name:
            return None
        return self.vendor_ids.get(vendor_name_key(name))


class VendorReconciler:
    """Links free-text vendor names to vendor rows, matching case-insensitively."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.logger = logger.bind(component="vendor_reconciler")

    async def resolve(
        self, names: Iterable[str | None], *, dry_run: bool = False
    ) -> VendorResolution:
        """Return ids for ``names``, creating vendors that do not exist yet.

        In a dry run nothing is created; missing names are reported in
        ``created`` but have no id.
        """

        wanted: dict[str, str] = {}
        for name in names:
            if name and name.strip():
                cleaned = " ".join(name.split())
                wanted.setdefault(vendor_name_key(cleaned), cleaned)
        resolution = VendorResolution()
        if not wanted:
            return resolution

        async with self.session_factory() as session:
            resolution.vendor_ids.update(await self._lookup(session, wanted.keys()))
            missing = [key for key in wanted if key not in resolution.vendor_ids]
            if not missing:
                return resolution

            resolution.created = [wanted[key] for key in missing]
            if dry_run:
                return resolution

            now = utcnow()
            rows = [
                {
                    "name": wanted[key],
                    "name_key": key,
                    "created_at": now,
                    "updated_at": now,
                }
                for key in missing
            ]
            stmt = dialect_insert(session, Vendor)
            if stmt is None:
                for row in rows:
                    session.add(Vendor(**row))
                await session.flush()
            else:
                await session.execute(stmt.values(rows).on_conflict_do_nothing())
            await session.commit()
            resolution.vendor_ids.update(await self._lookup(session, missing))

        self.logger.info("vendors_created", count=len(resolution.created))
        return resolution

    async def _lookup(self, session: AsyncSession, keys: Iterable[str]) -> dict[str, int]:
        key_list = list(keys)
        if not key_list:
            return {}
        result = await session.execute(
            select(Vendor.name_key, Vendor.id).where(Vendor.name_key.in_(key_list))
        )
        return {name_key: vendor_id for name_key, vendor_id in result.all()}

    async def link_upstream_ids(
        self, records: Sequence[VendorRecord], *, dry_run: bool = False
    ) -> int:
        """Attach upstream ids to vendors that so far exist only by name.

        Vendors created from free-text names carry no upstream id. The first
        vendor sync that sees the same name adopts that row, so the upsert
        keyed on ``upstream_vendor_id`` updates it instead of colliding on
        ``name_key``.
        """

        by_name_key = {
            record.name_key: record for record in records if record.upstream_vendor_id
        }
        if not by_name_key:
            return 0

        async with self.session_factory() as session:
            upstream_ids = [record.upstream_vendor_id for record in by_name_key.values()]
            known = set(
                (
                    await session.execute(
                        select(Vendor.upstream_vendor_id).where(
                            Vendor.upstream_vendor_id.in_(upstream_ids)
                        )
                    )
                ).scalars()
            )
            result = await session.execute(
                select(Vendor.id, Vendor.name_key).where(
                    Vendor.name_key.in_(list(by_name_key)),
                    Vendor.upstream_vendor_id.is_(None),
                )
            )
            candidates = [
                (vendor_id, by_name_key[name_key])
                for vendor_id, name_key in result.all()
                if by_name_key[name_key].upstream_vendor_id not in known
            ]
            if candidates and not dry_run:
                now = utcnow()
                for vendor_id, record in candidates:
                    await session.execute(
                        update(Vendor)
                        .where(Vendor.id == vendor_id)
                        .values(upstream_vendor_id=record.upstream_vendor_id, updated_at=now)
                    )
                await session.commit()

        if candidates:
            self.logger.info("vendors_linked", count=len(candidates), dry_run=dry_run)
        return len(candidates)


__all__ = ["VendorReconciler", "VendorResolution"]
