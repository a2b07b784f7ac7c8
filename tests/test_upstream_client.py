from __future__ import annotations

import base64
from datetime import datetime, timezone

import httpx
import pytest

from inventory_engine.config import UpstreamConfig, clean_account_path
from inventory_engine.errors import (
    ConfigurationError,
    MalformedResponseError,
    RetryExhaustedError,
    UpstreamAuthError,
    UpstreamHttpError,
)
from inventory_engine.upstream.client import Resource

PRODUCTS = [
    {"productId": "SKU-1", "quantityOnHand": 4},
    {"productId": "SKU-2", "quantityOnHand": 9},
    {"productId": "SKU-3", "quantityOnHand": 0},
]


@pytest.mark.asyncio
async def test_fetch_page_sends_auth_and_paging(upstream_client, fake_upstream) -> None:
    fake_upstream.resources["product"] = PRODUCTS

    response = await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)

    request = fake_upstream.requests[0]
    expected = base64.b64encode(b"key-1234567890:secret-0987654321").decode("ascii")
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert request.url.path == "/acme-warehouse/api/product"
    assert request.url.params["limit"] == "2"
    assert request.url.params["offset"] == "0"
    assert response.payload == PRODUCTS[:2]
    assert response.status == 200
    assert response.resource is Resource.PRODUCT


@pytest.mark.asyncio
async def test_modified_since_is_forwarded(upstream_client, fake_upstream) -> None:
    since = datetime(2025, 5, 1, 8, 30, tzinfo=timezone.utc)

    await upstream_client.fetch_page("product", limit=2, offset=2, modified_since=since)

    params = fake_upstream.requests[0].url.params
    assert params["lastUpdatedDate"] == since.isoformat()
    assert params["offset"] == "2"


@pytest.mark.asyncio
async def test_filters_are_forwarded_without_empty_values(upstream_client, fake_upstream) -> None:
    await upstream_client.fetch_page(
        Resource.PRODUCT,
        limit=2,
        offset=0,
        filters={"filter": "primaryVendor eq 'Acme Supply'", "status": None},
    )

    params = fake_upstream.requests[0].url.params
    assert params["filter"] == "primaryVendor eq 'Acme Supply'"
    assert "status" not in params


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried(upstream_client, fake_upstream, sleeps) -> None:
    fake_upstream.fail("product", 0, httpx.Response(401, text="bad credentials"))

    with pytest.raises(UpstreamAuthError) as excinfo:
        await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)

    assert excinfo.value.status == 401
    assert len(fake_upstream.requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_server_errors_are_retried_with_backoff(upstream_client, fake_upstream, sleeps) -> None:
    fake_upstream.resources["product"] = PRODUCTS
    fake_upstream.fail(
        "product",
        0,
        httpx.Response(503, text="busy"),
        httpx.Response(429, text="slow down"),
    )

    response = await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)

    assert response.payload == PRODUCTS[:2]
    assert len(fake_upstream.requests) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise(upstream_client, fake_upstream, sleeps) -> None:
    fake_upstream.fail("product", 0, *[httpx.Response(500, text="boom") for _ in range(3)])

    with pytest.raises(RetryExhaustedError) as excinfo:
        await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, UpstreamHttpError)
    assert excinfo.value.last_error.status == 500
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_transport_errors_are_retried(upstream_client, fake_upstream, sleeps) -> None:
    fake_upstream.resources["product"] = PRODUCTS
    fake_upstream.fail("product", 0, httpx.ConnectError("connection refused"))

    response = await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)

    assert len(response.payload) == 2
    assert sleeps == [0.5]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(upstream_client, fake_upstream) -> None:
    fake_upstream.fail("order", 0, httpx.Response(404, text="no such resource"))

    with pytest.raises(UpstreamHttpError) as excinfo:
        await upstream_client.fetch_page(Resource.ORDER, limit=2, offset=0)

    assert excinfo.value.status == 404
    assert excinfo.value.body_preview == "no such resource"
    assert len(fake_upstream.requests) == 1


@pytest.mark.asyncio
async def test_html_body_is_malformed(upstream_client, fake_upstream) -> None:
    fake_upstream.fail("product", 0, httpx.Response(200, html="<html>Login</html>"))

    with pytest.raises(MalformedResponseError):
        await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)

    assert len(fake_upstream.requests) == 1


@pytest.mark.asyncio
async def test_invalid_json_is_malformed(upstream_client, fake_upstream) -> None:
    fake_upstream.fail(
        "product",
        0,
        httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"}),
    )

    with pytest.raises(MalformedResponseError):
        await upstream_client.fetch_page(Resource.PRODUCT, limit=2, offset=0)


@pytest.mark.asyncio
async def test_test_connection(upstream_client, fake_upstream) -> None:
    fake_upstream.resources["product"] = PRODUCTS

    assert await upstream_client.test_connection() is True
    assert fake_upstream.requests[0].url.params["limit"] == "1"

    fake_upstream.fail("product", 0, httpx.Response(403, text="forbidden"))
    assert await upstream_client.test_connection() is False


def test_config_repr_hides_credentials(upstream_config) -> None:
    text = repr(upstream_config)

    assert "key-1234567890" not in text
    assert "secret-0987654321" not in text
    assert upstream_config.api_root == "https://erp.example.com/acme-warehouse/api"


@pytest.mark.parametrize(
    "raw",
    [
        "acme-warehouse",
        "/acme-warehouse/",
        "acme-warehouse/api",
        "https://app.finaleinventory.com/acme-warehouse/api/product",
        "https://app.finaleinventory.com/acme-warehouse",
    ],
)
def test_clean_account_path(raw) -> None:
    assert clean_account_path(raw) == "acme-warehouse"


def test_config_requires_credentials() -> None:
    with pytest.raises(ConfigurationError):
        UpstreamConfig(account_path="acme", api_key="", api_secret="secret")
