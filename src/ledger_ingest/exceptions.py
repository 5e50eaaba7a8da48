"""
Error taxonomy for the ingestion pipeline.

Fetch-layer terminal failures (TransientNetworkError, RateLimited, ClientRejected,
Cancelled) propagate to the caller. MalformedSourceEvent is adapter-local: the
offending event is skipped and the batch continues. CacheCorrupted never leaves
the result cache; it is converted to a cache miss.
"""

from typing import Optional


class LedgerIngestError(Exception):
    """Base class for all pipeline errors."""


class TransientNetworkError(LedgerIngestError):
    """
    Retryable failure (network error or 5xx) whose retry budget is exhausted.

    status is None for low-level network failures and the last HTTP status for
    server errors.
    """

    def __init__(self, message: str, status: Optional[int] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class RateLimited(LedgerIngestError):
    """Source kept answering 429 after the rate-limit retry budget was used up."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.status = 429
        self.retry_after = retry_after


class ClientRejected(LedgerIngestError):
    """Non-429 4xx response. Never retried; the body is surfaced verbatim."""

    def __init__(self, status: int, body: str, target: str = "") -> None:
        super().__init__(f"Request rejected with HTTP {status}: {body}")
        self.status = status
        self.body = body
        self.target = target


class Cancelled(LedgerIngestError):
    """The caller's cancellation token fired during a request or backoff wait."""


class MalformedSourceEvent(LedgerIngestError):
    """A single native event could not be parsed; only that event is dropped."""

    def __init__(self, source_id: str, reason: str) -> None:
        super().__init__(f"[{source_id}] malformed event: {reason}")
        self.source_id = source_id
        self.reason = reason


class CacheCorrupted(LedgerIngestError):
    """Cache store content could not be decoded. Treated as an empty cache."""


class UnknownSourceError(LedgerIngestError):
    """A request named a source id with no registered adapter."""

    def __init__(self, source_id: str) -> None:
        super().__init__(f"No adapter registered for source '{source_id}'")
        self.source_id = source_id
