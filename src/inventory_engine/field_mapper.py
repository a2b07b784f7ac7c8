"""Map flat upstream records onto domain records through alias tables.

Each target attribute lists the upstream names it may appear under, in
priority order. The first alias present with a non-null value wins; nothing is
guessed beyond the table.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

import structlog

from inventory_engine.errors import RecordMappingError
from inventory_engine.records import InventoryRecord, PurchaseOrderRecord, VendorRecord

logger = structlog.get_logger(__name__)

AliasTable = Mapping[str, Sequence[str]]

INVENTORY_ALIASES: AliasTable = {
    "sku": ("productId", "productSku", "sku", "internalId"),
    "product_name": ("internalName", "productName", "description", "name"),
    "stock": ("quantityAvailable", "quantityOnHand", "quantity", "stock"),
    "cost": ("unitCost", "averageCost", "cost", "lastCost"),
    "vendor": ("primaryVendor", "vendor", "primarySupplierName", "supplierName"),
    "location": ("primaryLocation", "location", "facilityName"),
    "reorder_point": ("reorderPoint", "reorderLevel", "reorder_point"),
    "reorder_quantity": ("reorderQuantity", "reorderQty", "reorder_quantity"),
    "upstream_modified_at": ("lastUpdatedDate", "lastModifiedDate", "lastModified"),
}

VENDOR_ALIASES: AliasTable = {
    "name": ("partyName", "groupName", "vendorName", "supplierName", "name"),
    "upstream_vendor_id": ("partyId", "vendorId", "supplierId", "id"),
    "contact_name": ("contactName", "contact"),
    "email": ("email", "emailAddress"),
    "phone": ("phone", "phoneNumber", "telephone"),
    "status": ("statusId", "status"),
    "active": ("active", "isActive"),
}

PURCHASE_ORDER_ALIASES: AliasTable = {
    "upstream_order_id": ("orderId", "purchaseOrderId", "id"),
    "order_number": ("orderNumber", "orderName", "orderId"),
    "vendor": ("supplierName", "vendorName", "partyName", "vendor", "supplier"),
    "status": ("statusId", "status"),
    "order_date": ("orderDate", "createdDate"),
    "expected_date": ("dueDate", "expectedDate", "estimatedDeliveryDate"),
    "total_amount": ("orderTotal", "grandTotal", "totalAmount", "total"),
    "upstream_modified_at": ("lastUpdatedDate", "lastModifiedDate", "lastModified"),
}

INACTIVE_STATUSES = frozenset({"INACTIVE", "PARTY_DISABLED", "DISABLED"})


def resolve_alias(flat: Mapping[str, Any], aliases: Sequence[str]) -> Any:
    """Return the value of the first alias present in ``flat`` with a non-null value."""

    for alias in aliases:
        value = flat.get(alias)
        if value is not None:
            return value
    return None


def parse_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def parse_int(value: Any, *, field: str, identifier: str | None = None, default: int = 0) -> int:
    """Lenient integer coercion; unparsable input logs a warning and yields ``default``.

    Negative numbers are clamped to zero.
    """

    if value is None or value == "":
        return default
    try:
        if isinstance(value, bool):
            raise TypeError("boolean is not a quantity")
        if isinstance(value, (int, float)):
            number = int(value)
        else:
            cleaned = str(value).strip().replace(",", "")
            try:
                number = int(cleaned)
            except ValueError:
                number = int(float(cleaned))
    except (TypeError, ValueError, OverflowError):
        logger.warning(
            "field_coercion_failed",
            field=field,
            identifier=identifier,
            value=repr(value),
            fallback=default,
        )
        return default
    return max(number, 0)


def parse_decimal(
    value: Any,
    *,
    field: str,
    identifier: str | None = None,
    default: Decimal = Decimal("0"),
) -> Decimal:
    """Lenient decimal coercion with the same fallback rules as :func:`parse_int`."""

    if value is None or value == "":
        return default
    try:
        if isinstance(value, bool):
            raise TypeError("boolean is not an amount")
        number = Decimal(str(value).strip().replace(",", ""))
        if not number.is_finite():
            raise ValueError("non-finite amount")
    except (TypeError, ValueError, InvalidOperation):
        logger.warning(
            "field_coercion_failed",
            field=field,
            identifier=identifier,
            value=repr(value),
            fallback=str(default),
        )
        return default
    return max(number, Decimal("0"))


def parse_datetime(value: Any, *, field: str, identifier: str | None = None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("field_coercion_failed", field=field, identifier=identifier, value=repr(value))
        return None


def parse_date(value: Any, *, field: str, identifier: str | None = None) -> date | None:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_datetime(value, field=field, identifier=identifier)
    return parsed.date() if parsed else None


def _require_key(value: Any, *, entity: str, key: str) -> str:
    text = parse_text(value)
    if not text:
        raise RecordMappingError(f"{entity} record has no {key}")
    return text


def map_inventory_record(flat: Mapping[str, Any]) -> InventoryRecord:
    sku = _require_key(
        resolve_alias(flat, INVENTORY_ALIASES["sku"]), entity="inventory", key="sku"
    )

    def pick(attribute: str) -> Any:
        return resolve_alias(flat, INVENTORY_ALIASES[attribute])

    return InventoryRecord(
        sku=sku,
        product_name=parse_text(pick("product_name")) or sku,
        stock=parse_int(pick("stock"), field="stock", identifier=sku),
        cost=parse_decimal(pick("cost"), field="cost", identifier=sku),
        vendor=parse_text(pick("vendor")),
        location=parse_text(pick("location")),
        reorder_point=parse_int(pick("reorder_point"), field="reorder_point", identifier=sku),
        reorder_quantity=parse_int(
            pick("reorder_quantity"), field="reorder_quantity", identifier=sku
        ),
        upstream_modified_at=parse_datetime(
            pick("upstream_modified_at"), field="upstream_modified_at", identifier=sku
        ),
    )


def _vendor_is_active(flat: Mapping[str, Any]) -> bool:
    active = resolve_alias(flat, VENDOR_ALIASES["active"])
    if isinstance(active, bool):
        return active
    status = parse_text(resolve_alias(flat, VENDOR_ALIASES["status"])).upper()
    return status not in INACTIVE_STATUSES


def map_vendor_record(flat: Mapping[str, Any]) -> VendorRecord:
    name = _require_key(
        resolve_alias(flat, VENDOR_ALIASES["name"]), entity="vendor", key="name"
    )
    upstream_id = parse_text(resolve_alias(flat, VENDOR_ALIASES["upstream_vendor_id"])) or None
    return VendorRecord(
        name=name,
        upstream_vendor_id=upstream_id,
        contact_name=parse_text(resolve_alias(flat, VENDOR_ALIASES["contact_name"])),
        email=parse_text(resolve_alias(flat, VENDOR_ALIASES["email"])),
        phone=parse_text(resolve_alias(flat, VENDOR_ALIASES["phone"])),
        is_active=_vendor_is_active(flat),
    )


def map_purchase_order_record(flat: Mapping[str, Any]) -> PurchaseOrderRecord:
    order_id = _require_key(
        resolve_alias(flat, PURCHASE_ORDER_ALIASES["upstream_order_id"]),
        entity="purchase_order",
        key="orderId",
    )

    def pick(attribute: str) -> Any:
        return resolve_alias(flat, PURCHASE_ORDER_ALIASES[attribute])

    return PurchaseOrderRecord(
        upstream_order_id=order_id,
        order_number=parse_text(pick("order_number")) or order_id,
        vendor=parse_text(pick("vendor")),
        status=parse_text(pick("status")),
        order_date=parse_date(pick("order_date"), field="order_date", identifier=order_id),
        expected_date=parse_date(pick("expected_date"), field="expected_date", identifier=order_id),
        total_amount=parse_decimal(pick("total_amount"), field="total_amount", identifier=order_id),
        upstream_modified_at=parse_datetime(
            pick("upstream_modified_at"), field="upstream_modified_at", identifier=order_id
        ),
    )


__all__ = [
    "INVENTORY_ALIASES",
    "PURCHASE_ORDER_ALIASES",
    "VENDOR_ALIASES",
    "map_inventory_record",
    "map_purchase_order_record",
    "map_vendor_record",
    "parse_date",
    "parse_datetime",
    "parse_decimal",
    "parse_int",
    "parse_text",
    "resolve_alias",
]
