from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

import httpx
import structlog

from inventory_engine.config import UpstreamConfig, mask_secret
from inventory_engine.errors import (
    MalformedResponseError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamHttpError,
    UpstreamTransportError,
)
from inventory_engine.upstream.retry import call_with_retry

logger = structlog.get_logger(__name__)

BODY_PREVIEW_CHARS = 500
MODIFIED_SINCE_PARAM = "lastUpdatedDate"


class Resource(StrEnum):
    PRODUCT = "product"
    INVENTORY_ITEM = "inventoryitem"
    PARTY = "party"
    ORDER = "order"


@dataclass(frozen=True)
class RawResponse:
    """Decoded JSON body of one page plus the request coordinates."""

    resource: Resource
    limit: int
    offset: int
    status: int
    payload: Any


def _basic_auth_header(api_key: str, api_secret: str) -> str:
    token = base64.b64encode(f"{api_key}:{api_secret}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _is_json_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class UpstreamClient:
    """Authenticated, retrying page fetcher for the upstream inventory API."""

    def __init__(
        self,
        config: UpstreamConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=None,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=config.api_root,
            timeout=config.timeout,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Authorization": _basic_auth_header(config.api_key, config.api_secret),
            },
        )
        self.logger = logger.bind(component="upstream_client", api_root=config.api_root)
        self.logger.debug("upstream_client_created", credential=mask_secret(config.api_key))

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_page(
        self,
        resource: Resource | str,
        *,
        limit: int,
        offset: int,
        modified_since: datetime | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> RawResponse:
        """Fetch one page of ``resource``, retrying transient failures."""

        resource = Resource(resource)
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if modified_since is not None:
            params[MODIFIED_SINCE_PARAM] = modified_since.isoformat()
        if filters:
            params.update({key: value for key, value in filters.items() if value is not None})

        async def _attempt() -> RawResponse:
            return await self._get(resource, params)

        retry_kwargs: dict[str, Any] = {
            "max_attempts": self.config.max_attempts,
            "base_delay": self.config.retry_base_delay,
            "operation_name": f"fetch_{resource.value}",
        }
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        return await call_with_retry(_attempt, **retry_kwargs)

    async def _get(self, resource: Resource, params: dict[str, Any]) -> RawResponse:
        path = f"/{resource.value}"
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            self.logger.warning("upstream_timeout", resource=resource.value, offset=params["offset"])
            raise UpstreamTransportError(
                "Upstream request timed out",
                payload={"resource": resource.value, "error": "timeout"},
            ) from exc
        except httpx.HTTPError as exc:
            self.logger.warning(
                "upstream_transport_error",
                resource=resource.value,
                offset=params["offset"],
                error=str(exc),
            )
            raise UpstreamTransportError(
                "Upstream request failed",
                payload={"resource": resource.value, "error": str(exc)},
            ) from exc

        preview = response.text[:BODY_PREVIEW_CHARS]
        if response.status_code in (401, 403):
            self.logger.error("upstream_auth_failed", status=response.status_code)
            raise UpstreamAuthError(response.status_code, preview, url=str(response.url))
        if not response.is_success:
            self.logger.warning(
                "upstream_http_error",
                resource=resource.value,
                status=response.status_code,
                body=preview,
            )
            raise UpstreamHttpError(response.status_code, preview, url=str(response.url))

        content_type = response.headers.get("content-type", "")
        if not _is_json_content_type(content_type):
            raise MalformedResponseError(
                "Upstream returned a non-JSON body",
                payload={"content_type": content_type, "body": preview},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "Upstream returned invalid JSON",
                payload={"content_type": content_type, "body": preview},
            ) from exc

        self.logger.debug(
            "upstream_page_fetched",
            resource=resource.value,
            offset=params["offset"],
            limit=params["limit"],
        )
        return RawResponse(
            resource=resource,
            limit=params["limit"],
            offset=params["offset"],
            status=response.status_code,
            payload=payload,
        )

    async def test_connection(self) -> bool:
        """Fetch a single product to confirm credentials and reachability."""

        try:
            await self.fetch_page(Resource.PRODUCT, limit=1, offset=0)
        except UpstreamError as exc:
            self.logger.warning("upstream_connection_test_failed", error=str(exc))
            return False
        self.logger.info("upstream_connection_ok")
        return True


__all__ = ["RawResponse", "Resource", "UpstreamClient"]
