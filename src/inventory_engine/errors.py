from __future__ import annotations

from typing import Any


class InventoryEngineError(RuntimeError):
    """Base error for the inventory engine; carries a machine-readable payload."""

    def __init__(self, message: str, *, payload: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.payload: dict[str, Any] = payload or {}


class ConfigurationError(InventoryEngineError):
    """Raised when required settings are missing or invalid."""


class UpstreamError(InventoryEngineError):
    """Base class for every failure talking to the upstream system."""


class UpstreamHttpError(UpstreamError):
    """Upstream answered with a non-2xx status."""

    def __init__(
        self,
        status: int,
        body_preview: str,
        *,
        url: str | None = None,
    ) -> None:
        super().__init__(
            f"Upstream returned HTTP {status}",
            payload={"status": status, "body": body_preview, "url": url},
        )
        self.status = status
        self.body_preview = body_preview
        self.url = url

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class UpstreamAuthError(UpstreamHttpError):
    """401/403 from upstream. Never retried."""

    @property
    def retryable(self) -> bool:
        return False


class UpstreamTransportError(UpstreamError):
    """Connection, DNS or timeout failure before a response was received."""


class RetryExhaustedError(UpstreamError):
    """All retry attempts failed; ``last_error`` holds the final cause."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Upstream call failed after {attempts} attempts: {last_error}",
            payload={"attempts": attempts, "last_error": str(last_error)},
        )
        self.attempts = attempts
        self.last_error = last_error


class MalformedResponseError(UpstreamError):
    """A 2xx response whose body is not the JSON we expect."""


class UnrecognizedResponseShapeError(MalformedResponseError):
    """JSON body matching none of the known response layouts."""


class RecordMappingError(InventoryEngineError):
    """A single upstream record could not be turned into a domain record."""

    def __init__(self, message: str, *, identifier: str | None = None) -> None:
        super().__init__(message, payload={"identifier": identifier})
        self.identifier = identifier


class SyncAlreadyRunningError(InventoryEngineError):
    """A sync of the same type is already in progress."""

    def __init__(self, sync_type: str, *, log_id: int | None = None) -> None:
        super().__init__(
            f"A '{sync_type}' sync is already running",
            payload={"sync_type": sync_type, "log_id": log_id},
        )
        self.sync_type = sync_type
        self.log_id = log_id


def is_fatal_upstream_error(exc: BaseException) -> bool:
    """True when ``exc`` (or the cause behind a retry exhaustion) is an auth failure."""

    if isinstance(exc, RetryExhaustedError):
        return isinstance(exc.last_error, UpstreamAuthError)
    return isinstance(exc, UpstreamAuthError)


__all__ = [
    "ConfigurationError",
    "InventoryEngineError",
    "MalformedResponseError",
    "RecordMappingError",
    "RetryExhaustedError",
    "SyncAlreadyRunningError",
    "UnrecognizedResponseShapeError",
    "UpstreamAuthError",
    "UpstreamError",
    "UpstreamHttpError",
    "UpstreamTransportError",
    "is_fatal_upstream_error",
]
