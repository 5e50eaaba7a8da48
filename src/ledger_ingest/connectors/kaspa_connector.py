"""
Kaspa connector — api.kaspa.org REST.

API:
    GET {base_url}/addresses/{address}/full-transactions?limit=500&offset=N&resolve_previous_outpoints=light

Kaspa is UTXO-based: a transaction carries no "from" or "to", only inputs
(with resolved previous outpoints) and outputs. The wallet's movement is the
net flow between the inputs it funded and the outputs paid back to it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from ..framework.base_connector import BaseConnector, RawEvent
from ..framework.date_filter import TimeRange
from ..framework.models import CanonicalTransaction, PriceLookup, TransactionKind
from ..transport.fetch_with_retry import CancellationToken, ResilientFetcher
from ..transport.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SOMPI_PER_KAS = 100_000_000
KIND_COINBASE = "coinbase"
KIND_TRANSFER = "transfer"


def sompi_to_kas(sompi: int) -> float:
    return sompi / SOMPI_PER_KAS


def normalize_address(address: Optional[str]) -> str:
    return (address or "").strip().lower()


@dataclass(frozen=True)
class KaspaInput:
    address: str
    amount: int  # sompi


@dataclass(frozen=True)
class KaspaOutput:
    address: str
    amount: int  # sompi


@dataclass(frozen=True)
class KaspaTx:
    transaction_id: str
    timestamp: datetime
    is_accepted: bool
    inputs: tuple[KaspaInput, ...]
    outputs: tuple[KaspaOutput, ...]

    @property
    def kind(self) -> str:
        # Coinbase (block reward) transactions spend no inputs
        return KIND_COINBASE if not self.inputs else KIND_TRANSFER

    def funded_by(self, address: str) -> int:
        return sum(i.amount for i in self.inputs if i.address == address)

    def paid_to(self, address: str) -> int:
        return sum(o.amount for o in self.outputs if o.address == address)

    @property
    def network_fee(self) -> int:
        return max(sum(i.amount for i in self.inputs) - sum(o.amount for o in self.outputs), 0)


class KaspaConnector(BaseConnector):
    """
    Connector for Kaspa addresses.

    Net flow per transaction:
        funded = inputs spent from the wallet, returned = outputs paid to the wallet
        funded > returned  → transfer_sent of (funded - returned - fee), fee charged to the wallet
        returned > funded  → transfer_received of (returned - funded), no fee
    Unaccepted (orphaned) transactions are skipped.
    """

    source_id = "kaspa"
    default_requests_per_second = 5.0
    default_base_url = "https://api.kaspa.org"
    PAGE_LIMIT = 500
    DEFAULT_MAX_PAGES = 40

    OPERATION_KINDS = frozenset({KIND_COINBASE, KIND_TRANSFER})
    DISPATCH = {
        KIND_COINBASE: "_on_coinbase",
        KIND_TRANSFER: "_on_transfer",
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
        seen: set[str] = set()
        events: list[RawEvent] = []
        start_ms = int(time_range.start.timestamp() * 1000) if time_range.start else None

        for page in range(self.max_pages):
            batch = await self._request_json(
                f"addresses/{identity}/full-transactions",
                params={
                    "limit": self.PAGE_LIMIT,
                    "offset": page * self.PAGE_LIMIT,
                    "resolve_previous_outpoints": "light",
                },
                cancel_token=cancel_token,
                allow_not_found=True,
            )
            if not batch:
                break
            for tx in batch:
                # offset pages shift when new transactions land mid-fetch
                tx_id = tx.get("transaction_id")
                if tx_id in seen:
                    continue
                if tx_id:
                    seen.add(tx_id)
                events.append(tx)
            if len(batch) < self.PAGE_LIMIT:
                break
            # Newest first: stop once the page reaches before the requested range
            if start_ms is not None and int(batch[-1].get("block_time") or 0) < start_ms:
                break
        else:
            logger.warning("Kaspa fetch truncated at %d pages | address=%s", self.max_pages, identity)

        logger.info("Kaspa fetched %d transactions | address=%s", len(events), identity)
        return events

    # ------------------------------------------------------------------
    # Normalize
    # ------------------------------------------------------------------

    def parse_event(self, raw: RawEvent) -> KaspaTx:
        return KaspaTx(
            transaction_id=str(raw["transaction_id"]),
            timestamp=datetime.fromtimestamp(int(raw["block_time"]) / 1000, tz=timezone.utc),
            is_accepted=bool(raw.get("is_accepted", False)),
            inputs=tuple(
                KaspaInput(
                    address=normalize_address(i.get("previous_outpoint_address")),
                    amount=int(i.get("previous_outpoint_amount") or 0),
                )
                for i in raw.get("inputs") or ()
            ),
            outputs=tuple(
                KaspaOutput(address=normalize_address(o.get("script_public_key_address")), amount=int(o["amount"]))
                for o in raw.get("outputs") or ()
            ),
        )

    def normalize_event(self, tx: KaspaTx, identity: str, price_lookup: PriceLookup) -> list[CanonicalTransaction]:
        if not tx.is_accepted:
            logger.debug("Kaspa skipping unaccepted transaction | tx=%s", tx.transaction_id)
            return []
        return self.dispatch(tx.kind, tx, tx, normalize_address(identity), price_lookup)

    def _on_coinbase(self, tx: KaspaTx, _event, wallet: str, price_lookup) -> list[CanonicalTransaction]:
        reward = tx.paid_to(wallet)
        if reward <= 0:
            return []
        return [
            self.entry(
                TransactionKind.REWARD, tx.timestamp, tx.transaction_id, price_lookup,
                received_amount=sompi_to_kas(reward), received_currency="KAS", notes="Mining reward",
            )
        ]

    def _on_transfer(self, tx: KaspaTx, _event, wallet: str, price_lookup) -> list[CanonicalTransaction]:
        funded = tx.funded_by(wallet)
        returned = tx.paid_to(wallet)

        if funded > returned:
            fee = tx.network_fee
            sent = max(funded - returned - fee, 0)
            if sent == 0:
                notes = "Consolidation"
            else:
                recipient = self._counterparty(tx.outputs, wallet)
                notes = f"Transfer to {recipient[:16]}..." if recipient else "Transfer sent"
            return [
                self.entry(
                    TransactionKind.TRANSFER_SENT, tx.timestamp, tx.transaction_id, price_lookup,
                    sent_amount=sompi_to_kas(sent) if sent else None,
                    sent_currency="KAS" if sent else None,
                    fee_amount=sompi_to_kas(fee),
                    fee_currency="KAS",
                    notes=notes,
                )
            ]

        if returned > funded:
            sender = self._counterparty(tx.inputs, wallet)
            return [
                self.entry(
                    TransactionKind.TRANSFER_RECEIVED, tx.timestamp, tx.transaction_id, price_lookup,
                    received_amount=sompi_to_kas(returned - funded),
                    received_currency="KAS",
                    notes=f"Transfer from {sender[:16]}..." if sender else "Transfer received",
                )
            ]
        return []

    @staticmethod
    def _counterparty(parts, wallet: str) -> str:
        return next((p.address for p in parts if p.address and p.address != wallet), "")
