from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field


def vendor_name_key(name: str) -> str:
    """Case- and whitespace-insensitive matching key for vendor names."""

    return " ".join(name.split()).lower()


class DomainRecord(BaseModel):
    """Common base: immutable, with a natural key and a set of tracked fields."""

    model_config = ConfigDict(frozen=True)

    KEY_FIELD: ClassVar[str]
    TRACKED_FIELDS: ClassVar[tuple[str, ...]]

    @property
    def natural_key(self) -> str:
        return str(getattr(self, self.KEY_FIELD))

    def tracked_values(self) -> dict[str, object]:
        return {name: getattr(self, name) for name in self.TRACKED_FIELDS}


class InventoryRecord(DomainRecord):
    KEY_FIELD: ClassVar[str] = "sku"
    TRACKED_FIELDS: ClassVar[tuple[str, ...]] = (
        "product_name",
        "stock",
        "cost",
        "vendor",
        "location",
        "reorder_point",
        "reorder_quantity",
    )

    sku: str = Field(min_length=1)
    product_name: str = ""
    stock: int = Field(default=0, ge=0)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    vendor: str = ""
    location: str = ""
    reorder_point: int = Field(default=0, ge=0)
    reorder_quantity: int = Field(default=0, ge=0)
    upstream_modified_at: datetime | None = None


class VendorRecord(DomainRecord):
    """A vendor is identified by its upstream id; ``name_key`` only when it has none."""

    KEY_FIELD: ClassVar[str] = "upstream_vendor_id"
    TRACKED_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "upstream_vendor_id",
        "contact_name",
        "email",
        "phone",
        "is_active",
    )

    name: str = Field(min_length=1)
    upstream_vendor_id: str | None = None
    contact_name: str = ""
    email: str = ""
    phone: str = ""
    is_active: bool = True

    @property
    def name_key(self) -> str:
        return vendor_name_key(self.name)

    @property
    def natural_key(self) -> str:
        return self.upstream_vendor_id or self.name_key


class PurchaseOrderRecord(DomainRecord):
    KEY_FIELD: ClassVar[str] = "upstream_order_id"
    TRACKED_FIELDS: ClassVar[tuple[str, ...]] = (
        "order_number",
        "vendor",
        "status",
        "order_date",
        "expected_date",
        "total_amount",
    )

    upstream_order_id: str = Field(min_length=1)
    order_number: str = ""
    vendor: str = ""
    status: str = ""
    order_date: date | None = None
    expected_date: date | None = None
    total_amount: Decimal = Field(default=Decimal("0"), ge=0)
    upstream_modified_at: datetime | None = None


__all__ = [
    "DomainRecord",
    "InventoryRecord",
    "PurchaseOrderRecord",
    "VendorRecord",
    "vendor_name_key",
]
