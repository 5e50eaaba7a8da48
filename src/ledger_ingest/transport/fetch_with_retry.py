"""
Resilient HTTP request executor with exponential backoff.

Status handling:
- 2xx / 3xx        → returned as success
- 429              → separate retry budget (default 10), honors Retry-After capped at max_delay;
                     the last 429 response is returned once the budget is spent
- other 4xx        → returned immediately, never retried
- 5xx              → standard retry budget (default 3); the last 5xx response is returned
- network failure  → standard retry budget; TransientNetworkError raised once spent

A CancellationToken aborts an in-flight request or backoff wait with Cancelled.
No domain knowledge lives here; adapters decide what a terminal response means.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import aiohttp

from ..exceptions import Cancelled, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_RATE_LIMIT_RETRIES = 10
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 8.0
DEFAULT_TIMEOUT_SECONDS = 30.0

# Low-level failures that count against the standard retry budget.
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


@dataclass(frozen=True)
class FetchRequest:
    method: str
    url: str
    params: Optional[Mapping[str, Any]] = None
    json_body: Any = None
    headers: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class FetchResponse:
    """Fully-read HTTP response. Headers are stored with lower-cased names."""

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


Transport = Callable[[FetchRequest], Awaitable[FetchResponse]]


class CancellationToken:
    """
    Cooperative cancellation signal threaded through the fetch layer.

    Usage:
        token = CancellationToken()
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        await fetcher.execute(url, cancel_token=token)
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES
    initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS

    def backoff_delay(self, attempt: int) -> float:
        """min(initial_delay * 2**attempt, max_delay) for a zero-based attempt index."""
        return min(self.initial_delay * (2**attempt), self.max_delay)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("60") or an HTTP-date; past dates give 0.
    Returns None when absent or unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if text.isdigit():
        return float(int(text))
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)


class AiohttpTransport:
    """
    Default transport: one lazily created aiohttp.ClientSession reused for all calls.

    The body is read inside the response context so the connection is released
    before the fetcher decides whether to retry.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def __call__(self, request: FetchRequest) -> FetchResponse:
        session = await self._get_session()
        async with session.request(
            request.method,
            request.url,
            params=request.params,
            json=request.json_body,
            headers=request.headers,
        ) as response:
            body = await response.read()
            return FetchResponse(
                status=response.status,
                body=body,
                headers={k.lower(): v for k, v in response.headers.items()},
                url=str(response.url),
            )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class ResilientFetcher:
    """
    Retrying, rate-limit-aware request executor.

    Usage:
        fetcher = ResilientFetcher()
        response = await fetcher.execute("https://api.kaspa.org/info/price")
        if response.ok:
            data = response.json()

    Worst-case latency of one execute() call is bounded by
    (max_retries + max_rate_limit_retries) × max_delay plus request time.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._transport: Transport = transport or AiohttpTransport()
        self._sleep = sleep

    async def execute(
        self,
        target: str,
        *,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FetchResponse:
        """
        Issue the request, retrying per the policy, and return the terminal response.

        Raises:
            Cancelled: cancel_token fired before or during a request or wait
            TransientNetworkError: network failures exhausted the standard budget
        """
        request = FetchRequest(
            method=method, url=target, params=params, json_body=json_body, headers=headers
        )
        policy = self.policy
        attempts = 0
        rate_limit_attempts = 0

        while True:
            self._raise_if_cancelled(cancel_token)
            try:
                response = await self._with_cancel(self._transport(request), cancel_token)
            except NETWORK_ERRORS as exc:
                attempts += 1
                if attempts >= policy.max_retries:
                    logger.error(
                        "Fetch failed after %d attempts | target=%s | error=%s",
                        attempts,
                        target,
                        exc,
                    )
                    raise TransientNetworkError(
                        f"Network error after {attempts} attempts: {exc}", attempts=attempts
                    ) from exc
                delay = policy.backoff_delay(attempts - 1)
                logger.warning(
                    "Network error — retry %d/%d in %.1fs | target=%s | error=%s",
                    attempts,
                    policy.max_retries - 1,
                    delay,
                    target,
                    exc,
                )
                await self._wait(delay, cancel_token)
                continue

            if response.status == 429:
                rate_limit_attempts += 1
                if rate_limit_attempts >= policy.max_rate_limit_retries:
                    logger.warning(
                        "Rate limit budget exhausted after %d responses | target=%s",
                        rate_limit_attempts,
                        target,
                    )
                    return response
                hint = parse_retry_after(response.header("Retry-After"))
                if hint is not None:
                    delay = min(hint, policy.max_delay)
                else:
                    delay = policy.backoff_delay(rate_limit_attempts - 1)
                logger.warning(
                    "HTTP 429 — waiting %.1fs (%d/%d) | target=%s",
                    delay,
                    rate_limit_attempts,
                    policy.max_rate_limit_retries,
                    target,
                )
                await self._wait(delay, cancel_token)
                continue

            if 400 <= response.status < 500:
                return response

            if 500 <= response.status < 600:
                attempts += 1
                if attempts >= policy.max_retries:
                    logger.error(
                        "HTTP %d after %d attempts | target=%s",
                        response.status,
                        attempts,
                        target,
                    )
                    return response
                delay = policy.backoff_delay(attempts - 1)
                logger.warning(
                    "HTTP %d — retry %d/%d in %.1fs | target=%s",
                    response.status,
                    attempts,
                    policy.max_retries - 1,
                    delay,
                    target,
                )
                await self._wait(delay, cancel_token)
                continue

            return response

    async def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_if_cancelled(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise Cancelled("Request cancelled")

    async def _wait(self, delay: float, cancel_token: Optional[CancellationToken]) -> None:
        await self._with_cancel(self._sleep(delay), cancel_token)

    async def _with_cancel(
        self, awaitable: Awaitable[T], cancel_token: Optional[CancellationToken]
    ) -> T:
        """Await awaitable, abandoning it with Cancelled if the token fires first."""
        if cancel_token is None:
            return await awaitable
        if cancel_token.cancelled:
            # the caller already built the coroutine; close it so it is not left unawaited
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled("Request cancelled")

        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise Cancelled("Request cancelled")
