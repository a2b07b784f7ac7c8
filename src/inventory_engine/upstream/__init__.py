from .client import RawResponse, Resource, UpstreamClient
from .retry import backoff_delay, call_with_retry, is_retryable

__all__ = [
    "RawResponse",
    "Resource",
    "UpstreamClient",
    "backoff_delay",
    "call_with_retry",
    "is_retryable",
]
