from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
import structlog
from sqlalchemy.pool import StaticPool

from inventory_engine.config import EngineSettings, UpstreamConfig
from inventory_engine.db.session import create_engine, create_session_factory, init_db
from inventory_engine.logging_config import configure_structured_logging
from inventory_engine.orchestrator import SyncOrchestrator
from inventory_engine.upstream.client import UpstreamClient


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging():
    configure_structured_logging(
        level="DEBUG",
        environment="development",
        service_name="inventory-engine-test",
        enable_json=False,
    )


@pytest.fixture
def logger():
    return structlog.get_logger().bind(component="test")


def transpose(rows: list[dict[str, Any]]) -> dict[str, list[Any]]:
    keys: list[str] = []
    for row in rows:
        for key in row:
            if key not in keys:
                keys.append(key)
    return {key: [row.get(key) for row in rows] for key in keys}


class FakeUpstream:
    """In-memory upstream API served through ``httpx.MockTransport``.

    ``failures`` maps ``(resource, offset)`` to a list of responses or
    exceptions consumed one per request before normal pages are served.
    """

    WRAPPERS = {"product": "productList", "party": "partyList", "order": "orderList"}
    ID_KEYS = {"product": "productId", "party": "partyId", "order": "orderId"}

    def __init__(
        self,
        resources: dict[str, list[dict[str, Any]]] | None = None,
        *,
        shape: str = "records",
    ) -> None:
        self.resources = resources or {}
        self.shape = shape
        self.failures: dict[tuple[str, int], list[httpx.Response | Exception]] = {}
        self.requests: list[httpx.Request] = []

    def fail(self, resource: str, offset: int, *outcomes: httpx.Response | Exception) -> None:
        self.failures.setdefault((resource, offset), []).extend(outcomes)

    def calls_for(self, resource: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(f"/{resource}")]

    def _body(self, resource: str, rows: list[dict[str, Any]]) -> Any:
        if self.shape == "columns":
            return transpose(rows) or {self.ID_KEYS.get(resource, "productId"): []}
        if self.shape == "wrapped":
            return {self.WRAPPERS.get(resource, "items"): rows}
        return rows

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resource = request.url.path.rsplit("/", 1)[-1]
        offset = int(request.url.params.get("offset", "0"))
        limit = int(request.url.params.get("limit", "100"))

        pending = self.failures.get((resource, offset))
        if pending:
            outcome = pending.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        rows = self.resources.get(resource, [])[offset : offset + limit]
        return httpx.Response(200, json=self._body(resource, rows))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream_config() -> UpstreamConfig:
    return UpstreamConfig(
        account_path="acme-warehouse",
        api_key="key-1234567890",
        api_secret="secret-0987654321",
        base_url="https://erp.example.com",
        timeout=5.0,
        page_size=2,
        max_attempts=3,
        retry_base_delay=0.5,
    )


@pytest.fixture
def settings(upstream_config: UpstreamConfig) -> EngineSettings:
    return EngineSettings(
        upstream=upstream_config,
        database_url="sqlite+aiosqlite:///:memory:",
        batch_size=2,
        stale_after_minutes=30,
        priority_threshold=5,
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def upstream_client(upstream_config, fake_upstream, fake_sleep):
    client = UpstreamClient(upstream_config, transport=fake_upstream.transport(), sleep=fake_sleep)
    try:
        yield client
    finally:
        await client.aclose()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def orchestrator(session_factory, upstream_client, settings):
    return SyncOrchestrator(session_factory, upstream_client, settings)
