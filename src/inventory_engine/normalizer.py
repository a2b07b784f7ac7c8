"""Turn any of the upstream's response layouts into a flat sequence of records.

The upstream API answers in one of three layouts depending on endpoint and
account configuration:

* ``RECORDS``: a JSON array of objects.
* ``COLUMNS``: one object whose keys map to parallel arrays, e.g.
  ``{"productId": ["A", "B"], "quantityOnHand": [3, 5]}``.
* ``WRAPPED``: an object holding the record array under a well-known key,
  e.g. ``{"productList": [...]}``.

Downstream code only ever sees :class:`NormalizedPage`.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Iterator, Mapping, Sequence

from inventory_engine.errors import UnrecognizedResponseShapeError

WRAPPER_KEYS: tuple[str, ...] = (
    "productList",
    "inventoryItemList",
    "partyList",
    "supplierList",
    "vendorList",
    "orderList",
    "products",
    "vendors",
    "orders",
    "items",
    "data",
)

ID_COLUMNS: frozenset[str] = frozenset(
    {"productId", "productSku", "sku", "partyId", "orderId", "orderUrl", "productUrl"}
)


class ResponseShape(StrEnum):
    RECORDS = "records"
    COLUMNS = "columns"
    WRAPPED = "wrapped"


def _is_record_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, Mapping) for item in value)


def _column_keys(raw: Mapping[str, Any]) -> list[str]:
    # A non-empty list of objects is a wrapped record list, never a column.
    return [
        key
        for key, value in raw.items()
        if isinstance(value, list) and not (value and _is_record_list(value))
    ]


def _wrapper_key(raw: Mapping[str, Any]) -> str | None:
    for key in WRAPPER_KEYS:
        if key in raw and _is_record_list(raw[key]):
            return key
    return None


def _looks_columnar(raw: Mapping[str, Any]) -> bool:
    keys = _column_keys(raw)
    if any(key in ID_COLUMNS for key in keys):
        return True
    # Empty arrays are often metadata (``errors``, ``warnings``) and never decide the shape.
    lengths = [len(raw[key]) for key in keys if raw[key]]
    return len(lengths) >= 2 and len(set(lengths)) < len(lengths)


def detect_shape(raw: Any) -> ResponseShape:
    """Classify ``raw`` or raise :class:`UnrecognizedResponseShapeError`."""

    if isinstance(raw, list):
        if not _is_record_list(raw):
            raise UnrecognizedResponseShapeError(
                "Response array contains non-object entries",
                payload={"sample": repr(raw[:3])},
            )
        return ResponseShape.RECORDS

    if isinstance(raw, Mapping):
        if _looks_columnar(raw):
            return ResponseShape.COLUMNS
        if _wrapper_key(raw) is not None:
            return ResponseShape.WRAPPED

    raise UnrecognizedResponseShapeError(
        "Response matches no known layout",
        payload={"type": type(raw).__name__, "keys": sorted(raw)[:20] if isinstance(raw, Mapping) else None},
    )


class NormalizedPage(Sequence[dict[str, Any]]):
    """Lazy, restartable view over the records of one upstream page.

    Column layouts are transposed on access; indices missing from a shorter
    column are simply left out of that record.
    """

    def __init__(self, raw: Any) -> None:
        self.shape = detect_shape(raw)
        if self.shape is ResponseShape.WRAPPED:
            key = _wrapper_key(raw)
            self.wrapper_key: str | None = key
            self._records: list[Mapping[str, Any]] | None = raw[key]
            self._columns: dict[str, list[Any]] = {}
        elif self.shape is ResponseShape.RECORDS:
            self.wrapper_key = None
            self._records = raw
            self._columns = {}
        else:
            self.wrapper_key = None
            self._records = None
            self._columns = {key: raw[key] for key in _column_keys(raw)}
        self._length = self._compute_length()

    def _compute_length(self) -> int:
        if self._records is not None:
            return len(self._records)
        return max((len(values) for values in self._columns.values()), default=0)

    def __len__(self) -> int:
        return self._length

    def _row(self, index: int) -> dict[str, Any]:
        if self._records is not None:
            return dict(self._records[index])
        return {
            key: values[index]
            for key, values in self._columns.items()
            if index < len(values)
        }

    def __getitem__(self, index):  # type: ignore[override]
        if isinstance(index, slice):
            return [self._row(i) for i in range(*index.indices(self._length))]
        if index < 0:
            index += self._length
        if not 0 <= index < self._length:
            raise IndexError("NormalizedPage index out of range")
        return self._row(index)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for index in range(self._length):
            yield self._row(index)

    def __repr__(self) -> str:
        return f"NormalizedPage(shape={self.shape.value!r}, rows={self._length})"


def normalize(raw: Any) -> NormalizedPage:
    """Normalize a decoded upstream body into a :class:`NormalizedPage`."""

    return NormalizedPage(raw)


__all__ = [
    "ID_COLUMNS",
    "NormalizedPage",
    "ResponseShape",
    "WRAPPER_KEYS",
    "detect_shape",
    "normalize",
]
