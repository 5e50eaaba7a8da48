"""
dYdX v4 connector — public indexer REST API, derivatives variant.

Fetches every subaccount of an address, then its fills, funding payments and
transfers. Emits DerivativesTransaction records rather than canonical ones.

API (page pagination, limit 100, 404 means "nothing here"):
    GET {base_url}/addresses/{address}
    GET {base_url}/fills?address=...&subaccountNumber=N&limit=100&page=P
    GET {base_url}/historicalFunding?address=...&subaccountNumber=N&limit=100&page=P
    GET {base_url}/transfers?address=...&subaccountNumber=N&limit=100&page=P

Raw events are wrapped with the endpoint they came from:
    {"stream": "fills", "subaccount": 0, "data": {...fill...}}
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..framework.base_connector import BaseConnector, RawEvent
from ..framework.date_filter import TimeRange
from ..framework.models import DerivativesTransaction, PositionTag, PriceLookup, parse_timestamp
from ..transport.fetch_with_retry import CancellationToken, ResilientFetcher
from ..transport.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

STREAM_FILLS = "fills"
STREAM_FUNDING = "funding"
STREAM_TRANSFERS = "transfers"

# endpoint path, response key
_STREAM_ENDPOINTS = {
    STREAM_FILLS: ("fills", "fills"),
    STREAM_FUNDING: ("historicalFunding", "historicalFunding"),
    STREAM_TRANSFERS: ("transfers", "transfers"),
}

CLOSING_FILL_TYPES = frozenset({"LIQUIDATED", "LIQUIDATION", "DELEVERAGED"})
SETTLEMENT_TOKEN = "USDC"


def market_asset(market: str) -> str:
    """Base asset of a perpetual market, e.g. "BTC-USD" → "BTC"."""
    return market.split("-", 1)[0] if market else market


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class DydxEvent:
    stream: str
    subaccount: int
    data: Mapping[str, Any]


class DydxConnector(BaseConnector):
    """
    Connector for dYdX v4 perpetuals via the indexer.

    Fills carry no realized P&L in the indexer; liquidations and deleverages
    are tagged close_position, every other fill open_position. Funding
    payments carry the signed payment as P&L. Transfers (deposits,
    withdrawals) are not position events and normalize to nothing.

    Usage:
        connector = DydxConnector(fetcher)
        raw = await connector.fetch_raw_activity("dydx1...", TimeRange())
        records = connector.normalize_batch(raw, "dydx1...")
    """

    source_id = "dydx"
    default_requests_per_second = 10.0
    default_base_url = "https://indexer.dydx.trade/v4"
    PAGE_LIMIT = 100
    DEFAULT_MAX_PAGES = 100

    OPERATION_KINDS = frozenset({STREAM_FILLS, STREAM_FUNDING, STREAM_TRANSFERS})
    DISPATCH = {
        STREAM_FILLS: "_on_fill",
        STREAM_FUNDING: "_on_funding",
        STREAM_TRANSFERS: "_on_transfer",
    }

    def __init__(
        self,
        fetcher: ResilientFetcher,
        config: Optional[Mapping[str, Any]] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(fetcher, config, limiter)
        self.max_pages = int(self.config.get("max_pages", self.DEFAULT_MAX_PAGES))

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_raw_activity(
        self,
        identity: str,
        time_range: TimeRange,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RawEvent]:
        account = await self._request_json(
            f"addresses/{identity}", cancel_token=cancel_token, allow_not_found=True
        )
        subaccounts = (account or {}).get("subaccounts") or []
        if not subaccounts:
            logger.info("dYdX address has no subaccounts | address=%s", identity)
            return []

        events: list[RawEvent] = []
        for subaccount in subaccounts:
            number = int(subaccount.get("subaccountNumber", 0))
            for stream in (STREAM_FILLS, STREAM_FUNDING, STREAM_TRANSFERS):
                for item in await self._fetch_stream(identity, number, stream, cancel_token):
                    events.append({"stream": stream, "subaccount": number, "data": item})

        logger.info(
            "dYdX fetched %d events | address=%s | subaccounts=%d", len(events), identity, len(subaccounts)
        )
        return events

    async def _fetch_stream(
        self, address: str, subaccount: int, stream: str, cancel_token: Optional[CancellationToken]
    ) -> list[dict[str, Any]]:
        path, key = _STREAM_ENDPOINTS[stream]
        items: list[dict[str, Any]] = []
        for page in range(self.max_pages):
            data = await self._request_json(
                path,
                params={
                    "address": address,
                    "subaccountNumber": subaccount,
                    "limit": self.PAGE_LIMIT,
                    "page": page,
                },
                cancel_token=cancel_token,
                allow_not_found=True,
            )
            batch = (data or {}).get(key) or []
            items.extend(batch)
            if len(batch) < self.PAGE_LIMIT:
                break
        else:
            logger.warning("dYdX %s truncated at %d pages | address=%s", stream, self.max_pages, address)
        return items

    # ------------------------------------------------------------------
    # Normalize
    # ------------------------------------------------------------------

    def parse_event(self, raw: RawEvent) -> DydxEvent:
        data = raw["data"]
        if not isinstance(data, Mapping):
            raise TypeError(f"event data must be an object, got {type(data).__name__}")
        return DydxEvent(stream=str(raw["stream"]), subaccount=int(raw.get("subaccount") or 0), data=data)

    def normalize_event(
        self, event: DydxEvent, identity: str, price_lookup: PriceLookup
    ) -> list[DerivativesTransaction]:
        return self.dispatch(event.stream, event.data, event, identity, price_lookup)

    def _on_fill(self, fill: Mapping[str, Any], event: DydxEvent, identity, price_lookup):
        fill_type = str(fill.get("type", ""))
        closing = fill_type in CLOSING_FILL_TYPES
        market = str(fill["market"])
        notes = " | ".join(
            part
            for part in (
                f"{fill.get('side', '')} {market}",
                f"@ {_float(fill.get('price')):.2f}",
                "Maker" if fill.get("liquidity") == "MAKER" else "Taker",
                "LIQUIDATION" if fill_type in ("LIQUIDATED", "LIQUIDATION") else "",
                "DELEVERAGED" if fill_type == "DELEVERAGED" else "",
            )
            if part
        )
        return [
            DerivativesTransaction(
                id=str(fill["id"]),
                timestamp=parse_timestamp(fill["createdAt"]),
                asset=market_asset(market),
                amount=_float(fill.get("size")),
                fee=_float(fill.get("fee")),
                realized_pnl=0.0,
                payment_token=SETTLEMENT_TOKEN,
                position_tag=PositionTag.CLOSE_POSITION if closing else PositionTag.OPEN_POSITION,
                origin_hash=str(fill.get("orderId") or fill["id"]),
                notes=notes,
                source_id=self.source_id,
            )
        ]

    def _on_funding(self, payment: Mapping[str, Any], event: DydxEvent, identity, price_lookup):
        market = str(payment["market"])
        amount = _float(payment.get("payment"))
        position_size = _float(payment.get("positionSize"))
        rate = _float(payment.get("rate"))
        funding_id = f"funding-{event.subaccount}-{market}-{payment['effectiveAtHeight']}"
        notes = " | ".join(
            (
                f"Funding {market}",
                f"Rate: {'+' if amount >= 0 else ''}{rate * 100:.6f}%",
                f"Position: {position_size:g}",
                f"Price: {_float(payment.get('price')):.2f}",
            )
        )
        return [
            DerivativesTransaction(
                id=funding_id,
                timestamp=parse_timestamp(payment["effectiveAt"]),
                asset=market_asset(market),
                amount=abs(position_size),
                fee=0.0,
                realized_pnl=amount,
                payment_token=SETTLEMENT_TOKEN,
                position_tag=PositionTag.FUNDING_PAYMENT,
                notes=notes,
                source_id=self.source_id,
            )
        ]

    def _on_transfer(self, transfer: Mapping[str, Any], event: DydxEvent, identity, price_lookup):
        logger.debug("dYdX transfer not a position event | type=%s", transfer.get("type"))
        return []
