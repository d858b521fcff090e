"""
Indexer Error Taxonomy
======================
Every failure the pipeline raises is classified so callers can tell
retryable conditions from terminal ones.
"""
from typing import Optional

import httpx

RATE_LIMIT_PATTERNS = ("rate limit", "too many requests", "compute units", "429")
TRANSIENT_PATTERNS = ("timeout", "timed out", "500", "502", "503", "504", "network", "econnreset")
AUTH_PATTERNS = ("401", "403", "unauthorized", "forbidden")


class IndexerError(Exception):
    retryable = False


class TransientError(IndexerError):
    """Timeouts, 5xx, dropped connections. Retried with backoff."""
    retryable = True


class RateLimitError(TransientError):
    pass


class MalformedResponseError(TransientError):
    """Upstream returned a body of the wrong shape."""


class AuthError(IndexerError):
    pass


class QueryError(IndexerError):
    """GraphQL rejected the query."""


class NoProviderAvailable(IndexerError):
    def __init__(self, message: str = "No RPC providers available", last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_error = last_error


class ConfigError(IndexerError):
    pass


class LegNormalizationError(IndexerError):
    """A trade leg is missing required fields or has an unparseable amount."""


def is_rate_limit_message(message: str) -> bool:
    message = message.lower()
    return any(p in message for p in RATE_LIMIT_PATTERNS)


def is_auth_message(message: str) -> bool:
    message = message.lower()
    return any(p in message for p in AUTH_PATTERNS)


def is_transient_message(message: str) -> bool:
    message = message.lower()
    return any(p in message for p in TRANSIENT_PATTERNS)


def classify_error(exc: BaseException) -> IndexerError:
    """
    Map an arbitrary exception onto the taxonomy.
    Already-classified errors are returned unchanged.
    """
    if isinstance(exc, IndexerError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return AuthError(f"HTTP {status} from {exc.request.url}")
        if status == 429:
            return RateLimitError(f"HTTP 429 from {exc.request.url}")
        if status >= 500:
            return TransientError(f"HTTP {status} from {exc.request.url}")
        return QueryError(f"HTTP {status} from {exc.request.url}")

    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return TransientError(f"timeout: {exc}")
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return TransientError(f"network error: {exc}")

    message = str(exc)
    if is_rate_limit_message(message):
        return RateLimitError(message)
    if is_auth_message(message):
        return AuthError(message)
    if is_transient_message(message):
        return TransientError(message)
    return IndexerError(message or exc.__class__.__name__)
