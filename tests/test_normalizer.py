from __future__ import annotations

import pytest

from inventory_engine.errors import MalformedResponseError, UnrecognizedResponseShapeError
from inventory_engine.normalizer import ResponseShape, detect_shape, normalize


ROWS = [
    {"productId": "SKU-1", "quantityOnHand": 5, "unitCost": "1.50"},
    {"productId": "SKU-2", "quantityOnHand": 0, "unitCost": "2.00"},
    {"productId": "SKU-3", "quantityOnHand": 12, "unitCost": "0.75"},
]


def _columns(rows):
    return {key: [row[key] for row in rows] for key in rows[0]}


def test_record_array_passes_through() -> None:
    page = normalize(ROWS)

    assert page.shape is ResponseShape.RECORDS
    assert len(page) == 3
    assert list(page) == ROWS


def test_column_layout_transposes_to_the_same_records() -> None:
    page = normalize(_columns(ROWS))

    assert page.shape is ResponseShape.COLUMNS
    assert list(page) == ROWS


def test_wrapped_layout_is_unwrapped() -> None:
    page = normalize({"productList": ROWS, "total": 3})

    assert page.shape is ResponseShape.WRAPPED
    assert page.wrapper_key == "productList"
    assert list(page) == ROWS


def test_mixed_length_columns_omit_missing_indices() -> None:
    raw = {"productId": ["A", "B", "C"], "quantityOnHand": [1, 2]}

    records = list(normalize(raw))

    assert len(records) == 3
    assert records[2] == {"productId": "C"}
    assert records[1] == {"productId": "B", "quantityOnHand": 2}


def test_single_id_column_is_columnar() -> None:
    page = normalize({"partyId": ["V1", "V2"], "status": "ok"})

    assert page.shape is ResponseShape.COLUMNS
    assert list(page) == [{"partyId": "V1"}, {"partyId": "V2"}]


def test_page_is_restartable() -> None:
    page = normalize(_columns(ROWS))

    first = list(page)
    second = list(page)

    assert first == second
    assert page[0] == ROWS[0]
    assert page[-1] == ROWS[-1]
    assert page[0:2] == ROWS[0:2]


def test_index_out_of_range() -> None:
    page = normalize(ROWS)

    with pytest.raises(IndexError):
        page[3]


def test_empty_pages() -> None:
    assert len(normalize([])) == 0
    assert len(normalize({"products": []})) == 0
    assert len(normalize({"productId": [], "quantityOnHand": []})) == 0


def test_wrapped_list_beside_empty_metadata_arrays() -> None:
    page = normalize({"productList": ROWS, "errors": [], "warnings": []})

    assert page.shape is ResponseShape.WRAPPED
    assert page.wrapper_key == "productList"
    assert list(page) == ROWS


def test_records_are_copies() -> None:
    page = normalize(ROWS)

    record = page[0]
    record["productId"] = "changed"

    assert ROWS[0]["productId"] == "SKU-1"


@pytest.mark.parametrize(
    "raw",
    [
        {"message": "maintenance"},
        "not json structure",
        42,
        None,
        [1, 2, 3],
        {},
    ],
)
def test_unrecognized_shapes_raise(raw) -> None:
    with pytest.raises(UnrecognizedResponseShapeError):
        detect_shape(raw)


def test_unrecognized_shape_is_a_malformed_response() -> None:
    with pytest.raises(MalformedResponseError):
        normalize({"message": "maintenance"})
