"""
XRP Ledger connector — rippled JSON-RPC account_tx.

API:
    POST {base_url}
    {"method": "account_tx", "params": [{"account": "r...", "ledger_index_min": -1,
      "ledger_index_max": -1, "limit": 200, "forward": false, "marker": {...}}]}

Raw event (one entry of result.transactions):
    {"tx": {"TransactionType": "Payment", "Account": "r...", "Destination": "r...",
            "Amount": "1000000", "Fee": "12", "date": 760000000, "hash": "ABC..."},
     "meta": {"TransactionResult": "tesSUCCESS", "delivered_amount": "1000000",
              "AffectedNodes": [...]},
     "validated": true}

API v2 servers return "tx_json" and a top-level "hash" instead of "tx"; both are accepted.

Amounts are either XRP drops (string) or issued-currency objects
{"currency": "USD", "issuer": "r...", "value": "12.5"}.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from ..exceptions import ClientRejected
from ..framework.base_connector import BaseConnector, RawEvent
from ..framework.date_filter import TimeRange
from ..framework.models import CanonicalTransaction, PriceLookup, TransactionKind
from ..transport.fetch_with_retry import CancellationToken, ResilientFetcher
from ..transport.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

RIPPLE_EPOCH_OFFSET = 946684800  # seconds between 1970-01-01 and 2000-01-01
DROPS_PER_XRP = 1_000_000

TX_DESCRIPTIONS = {
    "Payment": "XRP or token transfer",
    "OfferCreate": "DEX order created",
    "OfferCancel": "DEX order cancelled",
    "TrustSet": "Trust line modified",
    "AMMCreate": "AMM pool created",
    "AMMDeposit": "AMM liquidity added",
    "AMMWithdraw": "AMM liquidity removed",
    "AMMVote": "AMM fee vote",
    "AMMBid": "AMM auction bid",
    "AMMDelete": "AMM pool deleted",
    "EscrowCreate": "Escrow created",
    "EscrowFinish": "Escrow released",
    "EscrowCancel": "Escrow cancelled",
    "PaymentChannelCreate": "Payment channel opened",
    "PaymentChannelFund": "Payment channel funded",
    "PaymentChannelClaim": "Payment channel claimed",
    "CheckCreate": "Check created",
    "CheckCash": "Check cashed",
    "CheckCancel": "Check cancelled",
    "AccountSet": "Account settings modified",
    "SetRegularKey": "Regular key set",
    "SignerListSet": "Signer list set",
    "DepositPreauth": "Deposit preauthorized",
    "Clawback": "Tokens clawed back",
}

# Operations that move no value; the signer's fee is their only effect
FEE_ONLY_TYPES = (
    "OfferCancel",
    "TrustSet",
    "AMMVote",
    "AMMBid",
    "AMMDelete",
    "CheckCreate",
    "CheckCancel",
    "AccountSet",
    "SetRegularKey",
    "SignerListSet",
    "DepositPreauth",
)


def ripple_time_to_datetime(ripple_seconds: int) -> datetime:
    return datetime.fromtimestamp(ripple_seconds + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)


def drops_to_xrp(drops: Any) -> float:
    return int(drops) / DROPS_PER_XRP


def decode_hex_text(value: Optional[str]) -> str:
    """Decode a hex-encoded UTF-8 string (memo fields); undecodable input gives ""."""
    if not value:
        return ""
    try:
        return bytes.fromhex(value).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return ""


def format_currency_code(code: str) -> str:
    """
    Display form of an XRPL currency code.

    Three-letter codes pass through; 40-character hex codes decode to their
    printable ASCII text, else abbreviate to "ABCD...WXYZ".
    """
    if len(code) != 40:
        return code
    raw = code
    while raw.endswith("00"):
        raw = raw[:-2]
    try:
        decoded = bytes.fromhex(raw).decode("ascii")
    except (ValueError, UnicodeDecodeError):
        decoded = ""
    if decoded and decoded.isprintable():
        return decoded
    return f"{code[:4]}...{code[-4:]}"


def parse_amount(amount: Any) -> tuple[float, str]:
    """(value, currency) for a drops string or an issued-currency object."""
    if isinstance(amount, (str, int)):
        return drops_to_xrp(amount), "XRP"
    return float(amount["value"]), format_currency_code(str(amount["currency"]))


@dataclass(frozen=True)
class XrplTx:
    hash: str
    tx_type: str
    account: str
    destination: Optional[str]
    timestamp: datetime
    fee_drops: int
    result: str
    fields: Mapping[str, Any]
    meta: Mapping[str, Any]
    memo: str = ""

    @property
    def succeeded(self) -> bool:
        return self.result == "tesSUCCESS"

    @property
    def fee(self) -> float:
        return self.fee_drops / DROPS_PER_XRP

    def balance_changes(self, address: str) -> dict[str, Decimal]:
        """
        Net balance change per currency for address, from meta.AffectedNodes.

        XRP changes come from the AccountRoot node, issued currencies from
        RippleState trust lines (whose balance is stored from the low side's
        point of view). The fee is added back when address signed.
        """
        changes: dict[str, Decimal] = {}
        for wrapper in self.meta.get("AffectedNodes") or ():
            for node_kind in ("CreatedNode", "ModifiedNode", "DeletedNode"):
                node = wrapper.get(node_kind)
                if node is None:
                    continue
                final = node.get("FinalFields") or node.get("NewFields") or {}
                previous = node.get("PreviousFields") or {}
                entry_type = node.get("LedgerEntryType")

                if entry_type == "AccountRoot" and final.get("Account") == address:
                    if "Balance" not in final:
                        continue
                    before = previous.get("Balance", final["Balance"] if node_kind != "CreatedNode" else 0)
                    delta = (Decimal(str(final["Balance"])) - Decimal(str(before))) / DROPS_PER_XRP
                    changes["XRP"] = changes.get("XRP", Decimal(0)) + delta

                elif entry_type == "RippleState" and "Balance" in final:
                    low = (final.get("LowLimit") or {}).get("issuer")
                    high = (final.get("HighLimit") or {}).get("issuer")
                    if address not in (low, high):
                        continue
                    after = Decimal(str(final["Balance"]["value"]))
                    if "Balance" in previous:
                        before = Decimal(str(previous["Balance"]["value"]))
                    elif node_kind == "CreatedNode":
                        before = Decimal(0)
                    else:
                        before = after
                    delta = after - before
                    if address == high:
                        delta = -delta
                    currency = format_currency_code(str(final["Balance"]["currency"]))
                    changes[currency] = changes.get(currency, Decimal(0)) + delta

        if self.account == address and "XRP" in changes:
            changes["XRP"] += Decimal(self.fee_drops) / DROPS_PER_XRP
        return {currency: delta for currency, delta in changes.items() if delta != 0}


class XrplConnector(BaseConnector):
    """
    Connector for XRP Ledger accounts via rippled JSON-RPC.

    Only the signing account pays the fee, so fees are attributed only when
    Account equals the wallet. Failed (non-tesSUCCESS) transactions still
    burn the fee and normalize to a fee-only entry.
    """

    source_id = "xrpl"
    default_requests_per_second = 10.0
    default_base_url = "https://s2.ripple.com:51234"
    PAGE_LIMIT = 200
    DEFAULT_MAX_PAGES = 50

    OPERATION_KINDS = frozenset(
        {
            "Payment",
            "OfferCreate",
            "CheckCash",
            "EscrowCreate",
            "EscrowFinish",
            "EscrowCancel",
            "PaymentChannelCreate",
            "PaymentChannelFund",
            "PaymentChannelClaim",
            "AMMCreate",
            "AMMDeposit",
            "AMMWithdraw",
            "Clawback",
            *FEE_ONLY_TYPES,
        }
    )
    DISPATCH = {
        "Payment": "_on_payment",
        "OfferCreate": "_on_offer_create",
        "CheckCash": "_on_check_cash",
        "EscrowCreate": "_on_lock_up",
        "PaymentChannelCreate": "_on_lock_up",
        "PaymentChannelFund": "_on_lock_up",
        "EscrowFinish": "_on_release",
        "EscrowCancel": "_on_release",
        "PaymentChannelClaim": "_on_release",
        "AMMCreate": "_on_amm",
        "AMMDeposit": "_on_amm",
        "AMMWithdraw": "_on_amm",
        "Clawback": "_on_clawback",
        **{tx_type: "_on_fee_only" for tx_type in FEE_ONLY_TYPES},
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
        marker: Any = None
        start = time_range.start

        for _ in range(self.max_pages):
            params: dict[str, Any] = {
                "account": identity,
                "ledger_index_min": -1,
                "ledger_index_max": -1,
                "limit": self.PAGE_LIMIT,
                "forward": False,
            }
            if marker is not None:
                params["marker"] = marker

            data = await self._request_json(
                self.base_url,
                method="POST",
                json_body={"method": "account_tx", "params": [params]},
                cancel_token=cancel_token,
            )
            result = (data or {}).get("result") or {}
            if result.get("error") == "actNotFound":
                logger.info("XRPL account not found | address=%s", identity)
                return []
            if result.get("status") != "success":
                raise ClientRejected(200, str(result.get("error_message") or result.get("error")), target=self.base_url)

            page = [wrapper for wrapper in result.get("transactions") or () if wrapper.get("validated")]
            for wrapper in page:
                tx_hash = _wrapper_hash(wrapper)
                if tx_hash in seen:
                    continue
                if tx_hash:
                    seen.add(tx_hash)
                events.append(wrapper)

            marker = result.get("marker")
            if marker is None:
                break
            # Pages run newest first; once a page reaches before the range there is nothing left to want
            if start is not None and page and _wrapper_time(page[-1]) < start:
                break
        else:
            logger.warning("XRPL account_tx truncated at %d pages | address=%s", self.max_pages, identity)

        logger.info("XRPL fetched %d transactions | address=%s", len(events), identity)
        return events

    # ------------------------------------------------------------------
    # Normalize
    # ------------------------------------------------------------------

    def parse_event(self, raw: RawEvent) -> XrplTx:
        fields = raw.get("tx") or raw.get("tx_json") or {}
        meta = raw.get("meta") or {}
        memos = fields.get("Memos") or []
        memo = decode_hex_text(memos[0].get("Memo", {}).get("MemoData")) if memos else ""
        return XrplTx(
            hash=str(fields.get("hash") or raw["hash"]),
            tx_type=str(fields["TransactionType"]),
            account=str(fields["Account"]),
            destination=fields.get("Destination"),
            timestamp=ripple_time_to_datetime(int(fields.get("date", raw.get("date")))),
            fee_drops=int(fields.get("Fee") or 0),
            result=str(meta.get("TransactionResult", "")),
            fields=fields,
            meta=meta,
            memo=memo,
        )

    def normalize_event(self, tx: XrplTx, identity: str, price_lookup: PriceLookup) -> list[CanonicalTransaction]:
        signed = tx.account == identity
        if not tx.succeeded:
            if not signed:
                return []
            return [self._fee_entry(tx, price_lookup, f"Failed {tx.tx_type} ({tx.result})")]

        records = self.dispatch(tx.tx_type, tx, tx, identity, price_lookup)
        if not signed:
            return records
        if not records:
            return [self._fee_entry(tx, price_lookup, self._notes(tx))] if tx.fee_drops > 0 else []
        records[0] = replace(records[0], fee_amount=tx.fee, fee_currency="XRP")
        return records

    def reconstruct_from_balance_changes(
        self, operation: Any, tx: XrplTx, identity: str, price_lookup: PriceLookup
    ) -> list[CanonicalTransaction]:
        """Rebuild any operation from the wallet's net balance changes in the ledger metadata."""
        changes = tx.balance_changes(identity)
        sent = [(currency, -delta) for currency, delta in changes.items() if delta < 0]
        received = [(currency, delta) for currency, delta in changes.items() if delta > 0]
        notes = self._notes(tx)

        if len(sent) == 1 and len(received) == 1:
            return [
                self.entry(
                    TransactionKind.TRADE, tx.timestamp, tx.hash, price_lookup,
                    sent_amount=float(sent[0][1]), sent_currency=sent[0][0],
                    received_amount=float(received[0][1]), received_currency=received[0][0],
                    notes=notes,
                )
            ]
        records = [
            self.entry(
                TransactionKind.TRANSFER_SENT, tx.timestamp, tx.hash, price_lookup,
                sent_amount=float(amount), sent_currency=currency, notes=notes,
            )
            for currency, amount in sent
        ]
        records.extend(
            self.entry(
                TransactionKind.TRANSFER_RECEIVED, tx.timestamp, tx.hash, price_lookup,
                received_amount=float(amount), received_currency=currency, notes=notes,
            )
            for currency, amount in received
        )
        return records

    # ------------------------------------------------------------------
    # Transaction handlers
    # ------------------------------------------------------------------

    def _on_payment(self, tx: XrplTx, _event, identity, price_lookup):
        outgoing = tx.account == identity
        incoming = tx.destination == identity
        if outgoing == incoming:
            # Self-payments (currency conversion) and rippling through the wallet's trust lines
            return self.reconstruct_from_balance_changes(tx, tx, identity, price_lookup)

        delivered = tx.meta.get("delivered_amount", tx.meta.get("DeliveredAmount"))
        if delivered in (None, "unavailable"):
            delivered = tx.fields["Amount"]
        value, currency = parse_amount(delivered)
        if outgoing:
            return [self._sent(TransactionKind.TRANSFER_SENT, tx, value, currency, price_lookup)]
        return [self._received(TransactionKind.TRANSFER_RECEIVED, tx, value, currency, price_lookup)]

    def _on_offer_create(self, tx: XrplTx, _event, identity, price_lookup):
        # Only actual fills count; an unfilled order leaves the signer with a fee-only entry
        return self.reconstruct_from_balance_changes(tx, tx, identity, price_lookup)

    def _on_check_cash(self, tx: XrplTx, _event, identity, price_lookup):
        if tx.account != identity:
            return self.reconstruct_from_balance_changes(tx, tx, identity, price_lookup)
        delivered = tx.meta.get("delivered_amount") or tx.fields.get("Amount") or tx.fields.get("DeliverMin")
        value, currency = parse_amount(delivered)
        return [self._received(TransactionKind.TRANSFER_RECEIVED, tx, value, currency, price_lookup)]

    def _on_lock_up(self, tx: XrplTx, _event, identity, price_lookup):
        if tx.account != identity or "Amount" not in tx.fields:
            return []
        value, currency = parse_amount(tx.fields["Amount"])
        return [self._sent(TransactionKind.STAKE, tx, value, currency, price_lookup)]

    def _on_release(self, tx: XrplTx, _event, identity, price_lookup):
        records = []
        for currency, delta in tx.balance_changes(identity).items():
            if delta > 0:
                records.append(self._received(TransactionKind.UNSTAKE, tx, float(delta), currency, price_lookup))
        return records

    def _on_amm(self, tx: XrplTx, _event, identity, price_lookup):
        return self.reconstruct_from_balance_changes(tx, tx, identity, price_lookup)

    def _on_clawback(self, tx: XrplTx, _event, identity, price_lookup):
        if tx.account == identity:
            return []  # the wallet is the issuer doing the clawback
        records = []
        for currency, delta in tx.balance_changes(identity).items():
            if delta < 0:
                records.append(self._sent(TransactionKind.LOSS, tx, float(-delta), currency, price_lookup))
        return records

    def _on_fee_only(self, tx: XrplTx, _event, identity, price_lookup):
        return []

    # ------------------------------------------------------------------
    # Record builders
    # ------------------------------------------------------------------

    @staticmethod
    def _notes(tx: XrplTx) -> str:
        notes = TX_DESCRIPTIONS.get(tx.tx_type, tx.tx_type)
        return f"{notes} | {tx.memo}" if tx.memo else notes

    def _sent(self, kind, tx: XrplTx, value: float, currency: str, price_lookup) -> CanonicalTransaction:
        return self.entry(
            kind, tx.timestamp, tx.hash, price_lookup,
            sent_amount=value, sent_currency=currency, notes=self._notes(tx),
        )

    def _received(self, kind, tx: XrplTx, value: float, currency: str, price_lookup) -> CanonicalTransaction:
        return self.entry(
            kind, tx.timestamp, tx.hash, price_lookup,
            received_amount=value, received_currency=currency, notes=self._notes(tx),
        )

    def _fee_entry(self, tx: XrplTx, price_lookup, notes: str) -> CanonicalTransaction:
        return self.entry(
            TransactionKind.TRANSFER_SENT, tx.timestamp, tx.hash, price_lookup,
            fee_amount=tx.fee, fee_currency="XRP", notes=notes,
        )


def _wrapper_time(wrapper: RawEvent) -> datetime:
    fields = wrapper.get("tx") or wrapper.get("tx_json") or {}
    try:
        return ripple_time_to_datetime(int(fields.get("date", wrapper.get("date"))))
    except (TypeError, ValueError):
        return datetime.max.replace(tzinfo=timezone.utc)


def _wrapper_hash(wrapper: RawEvent) -> Optional[str]:
    fields = wrapper.get("tx") or wrapper.get("tx_json") or {}
    return fields.get("hash") or wrapper.get("hash")
