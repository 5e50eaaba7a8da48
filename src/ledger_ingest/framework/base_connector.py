"""
Base source adapter.

Every upstream (Cosmos LCD, XRPL JSON-RPC, Kaspa REST, dYdX indexer, ...)
inherits from BaseConnector and implements the standard interface for:
1. Fetching raw native events (rate-limited, through the resilient fetch layer)
2. Parsing one raw event into the source's own event dataclass
3. Dispatching each native operation kind through a closed handler table
4. Emitting 0..n canonical records per native event

Fee and id attribution for multi-entry origins is shared by all adapters and
lives in attribute_origins().
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, ClassVar, Iterable, Mapping, Optional, Sequence

from ..exceptions import ClientRejected, MalformedSourceEvent, RateLimited, TransientNetworkError
from ..transport.fetch_with_retry import CancellationToken, ResilientFetcher, parse_retry_after
from ..transport.rate_limiter import RateLimiter
from .date_filter import TimeRange
from .identity import origin_entry_id
from .models import CanonicalTransaction, LedgerRecord, PriceLookup, TransactionKind, date_key, no_prices

logger = logging.getLogger(__name__)

RawEvent = dict[str, Any]


def attribute_origins(records: Sequence[LedgerRecord]) -> list[LedgerRecord]:
    """
    Assign ids and the single fee owner for canonical entries sharing an origin hash.

    - An origin with one entry keeps the bare origin hash as its id.
    - An origin with several entries gets ids {origin_hash}-{index} in emission order.
    - The origin's fee is the first non-zero fee reported for it (with that
      entry's fee currency); it moves to the first emitted entry and every
      sibling carries zero.

    Derivatives records pass through unchanged. Re-applying the function to its
    own output gives the same result.
    """
    groups: dict[str, list[int]] = {}
    for position, record in enumerate(records):
        if isinstance(record, CanonicalTransaction):
            groups.setdefault(record.origin_hash, []).append(position)

    result = list(records)
    for origin_hash, positions in groups.items():
        fee_amount, fee_currency = 0.0, ""
        for position in positions:
            entry = records[position]
            if entry.fee_amount > 0:
                fee_amount, fee_currency = entry.fee_amount, entry.fee_currency
                break

        multi = len(positions) > 1
        for index, position in enumerate(positions):
            entry = records[position]
            owns_fee = index == 0
            result[position] = replace(
                entry,
                id=origin_entry_id(origin_hash, index) if multi else origin_hash,
                fee_amount=fee_amount if owns_fee else 0.0,
                fee_currency=fee_currency if owns_fee else "",
            )
    return result


class BaseConnector(ABC):
    """
    Abstract base class for source adapters.

    Subclasses declare:
        source_id:                   registry id, e.g. "osmosis"
        default_requests_per_second: upstream ceiling used when config is silent
        default_base_url:            upstream root used when config is silent
        OPERATION_KINDS:             every native operation kind the adapter understands
        DISPATCH:                    operation kind → handler method name

    The two tables must cover exactly the same kinds; a mismatch raises
    TypeError when the subclass is created, not when the first event arrives.
    """

    source_id: ClassVar[str]
    default_requests_per_second: ClassVar[float] = 1.0
    default_base_url: ClassVar[str] = ""
    OPERATION_KINDS: ClassVar[frozenset[str]] = frozenset()
    DISPATCH: ClassVar[Mapping[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        declared = set(cls.OPERATION_KINDS)
        handled = set(cls.DISPATCH)
        if declared != handled:
            raise TypeError(
                f"{cls.__name__}: operation kinds without handler {sorted(declared - handled)}, "
                f"handlers for undeclared kinds {sorted(handled - declared)}"
            )
        missing = [name for name in cls.DISPATCH.values() if not callable(getattr(cls, name, None))]
        if missing:
            raise TypeError(f"{cls.__name__}: dispatch table names missing methods {sorted(missing)}")

    def __init__(
        self,
        fetcher: ResilientFetcher,
        config: Optional[Mapping[str, Any]] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize the adapter.

        Args:
            fetcher: Shared resilient fetch layer
            config: The sources.<id> section of the configuration
            limiter: Override for the per-source rate limiter (tests)
        """
        self.fetcher = fetcher
        self.config: Mapping[str, Any] = dict(config or {})
        self.base_url = str(self.config.get("base_url") or self.default_base_url).rstrip("/")
        rps = float(self.config.get("requests_per_second", self.default_requests_per_second))
        self.limiter = limiter or RateLimiter(rps)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_raw_activity(
        self,
        identity: str,
        time_range: TimeRange,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RawEvent]:
        """
        Fetch every native event for identity, newest pages first where the upstream pages that way.

        Implementations call _request_json() for each page so every request is
        rate-limited and retried. The returned list may include events outside
        time_range; the pipeline filters after normalization.

        Raises:
            TransientNetworkError, RateLimited, ClientRejected, Cancelled
        """

    @abstractmethod
    def parse_event(self, raw: RawEvent) -> Any:
        """
        Parse one raw event into the adapter's event dataclass.

        KeyError, ValueError and TypeError raised here are reported as
        MalformedSourceEvent by normalize().
        """

    @abstractmethod
    def normalize_event(self, event: Any, identity: str, price_lookup: PriceLookup) -> list[LedgerRecord]:
        """Turn one parsed event into 0..n records, using dispatch() per operation."""

    def reconstruct_from_balance_changes(
        self, operation: Any, event: Any, identity: str, price_lookup: PriceLookup
    ) -> list[LedgerRecord]:
        """Fallback for unrecognized operation kinds. Sources without balance signals emit nothing."""
        return []

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(
        self,
        raw: RawEvent,
        identity: str,
        price_lookup: Optional[PriceLookup] = None,
    ) -> list[LedgerRecord]:
        """
        Normalize one raw event.

        Raises:
            MalformedSourceEvent: raw could not be parsed into the source's event type
        """
        try:
            event = self.parse_event(raw)
            records = self.normalize_event(event, identity, price_lookup or no_prices)
        except MalformedSourceEvent:
            raise
        except (KeyError, ValueError, TypeError) as exc:
            raise MalformedSourceEvent(self.source_id, f"{type(exc).__name__}: {exc}") from exc
        return attribute_origins(records)

    def normalize_batch(
        self,
        raw_events: Iterable[RawEvent],
        identity: str,
        price_lookup: Optional[PriceLookup] = None,
    ) -> list[LedgerRecord]:
        """Normalize events in emission order, skipping malformed ones."""
        records: list[LedgerRecord] = []
        skipped = 0
        for raw in raw_events:
            try:
                records.extend(self.normalize(raw, identity, price_lookup))
            except MalformedSourceEvent as exc:
                skipped += 1
                logger.warning("%s skipped event | reason=%s", self.source_id, exc.reason)
        if skipped:
            logger.info("%s normalized with skips | records=%d | skipped=%d", self.source_id, len(records), skipped)
        return attribute_origins(records)

    def dispatch(
        self, kind: str, operation: Any, event: Any, identity: str, price_lookup: PriceLookup
    ) -> list[LedgerRecord]:
        """Route one native operation to its handler, or to the balance-change fallback."""
        handler_name = self.DISPATCH.get(kind)
        if handler_name is None:
            logger.debug("%s unknown operation kind — reconstructing | kind=%s", self.source_id, kind)
            return self.reconstruct_from_balance_changes(operation, event, identity, price_lookup)
        return getattr(self, handler_name)(operation, event, identity, price_lookup)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def entry(
        self,
        kind: TransactionKind,
        timestamp: datetime,
        origin_hash: str,
        price_lookup: PriceLookup,
        **fields: Any,
    ) -> CanonicalTransaction:
        """Build a CanonicalTransaction stamped with this source and the day's price."""
        return CanonicalTransaction(
            id=origin_hash,
            kind=kind,
            timestamp=timestamp,
            origin_hash=origin_hash,
            fiat_price_at_time=price_lookup(date_key(timestamp)),
            source_id=self.source_id,
            **fields,
        )

    async def _request_json(
        self,
        path_or_url: str,
        *,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        cancel_token: Optional[CancellationToken] = None,
        allow_not_found: bool = False,
    ) -> Any:
        """
        Rate-limited, retried request returning the decoded JSON body.

        Terminal non-2xx responses become the error taxonomy; with
        allow_not_found a 404 returns None instead of raising.
        """
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}/{path_or_url.lstrip('/')}"
        await self.limiter.wait_for_slot()
        response = await self.fetcher.execute(
            url, method=method, params=params, json_body=json_body, cancel_token=cancel_token
        )

        if response.status == 429:
            raise RateLimited(
                f"{self.source_id} rate limited at {url}",
                retry_after=parse_retry_after(response.header("Retry-After")),
            )
        if response.status == 404 and allow_not_found:
            return None
        if 400 <= response.status < 500:
            raise ClientRejected(response.status, response.text(), target=url)
        if response.status >= 500:
            raise TransientNetworkError(
                f"{self.source_id} HTTP {response.status} at {url}", status=response.status
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError(
                f"{self.source_id} returned a non-JSON body at {url}", status=response.status
            ) from exc

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"
