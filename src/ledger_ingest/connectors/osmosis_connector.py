"""
Osmosis connector — Cosmos SDK LCD transaction search.

Fetches every transaction where the wallet is the message sender or a transfer
recipient and normalizes each message of each transaction separately.

API:
    GET {base_url}/cosmos/tx/v1beta1/txs?query=message.sender='osmo1...'&page=N&limit=100
    GET {base_url}/cosmos/tx/v1beta1/txs?query=transfer.recipient='osmo1...'&page=N&limit=100

Raw event (one LCD tx_response):
    {
      "txhash": "A1B2...", "height": "12345678", "code": 0,
      "timestamp": "2024-03-01T12:00:00Z",
      "tx": {"body": {"messages": [{"@type": "/cosmos.bank.v1beta1.MsgSend", ...}]},
             "auth_info": {"fee": {"amount": [{"denom": "uosmo", "amount": "2500"}]}}},
      "events": [{"type": "coin_received", "attributes": [{"key": "receiver", "value": "osmo1..."}, ...]}]
    }

Nodes running older Tendermint versions return event attributes base64-encoded;
set attributes_base64: true for those endpoints in config/sources.yaml.
"""

import base64
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from ..framework.base_connector import BaseConnector, RawEvent
from ..framework.date_filter import TimeRange
from ..framework.models import CanonicalTransaction, PriceLookup, TransactionKind, parse_timestamp
from ..transport.fetch_with_retry import CancellationToken, ResilientFetcher
from ..transport.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MSG_SEND = "/cosmos.bank.v1beta1.MsgSend"
MSG_IBC_TRANSFER = "/ibc.applications.transfer.v1.MsgTransfer"
MSG_DELEGATE = "/cosmos.staking.v1beta1.MsgDelegate"
MSG_UNDELEGATE = "/cosmos.staking.v1beta1.MsgUndelegate"
MSG_REDELEGATE = "/cosmos.staking.v1beta1.MsgBeginRedelegate"
MSG_WITHDRAW_REWARD = "/cosmos.distribution.v1beta1.MsgWithdrawDelegatorReward"
MSG_SWAP_IN = "/osmosis.gamm.v1beta1.MsgSwapExactAmountIn"
MSG_SWAP_OUT = "/osmosis.gamm.v1beta1.MsgSwapExactAmountOut"
MSG_JOIN_POOL = "/osmosis.gamm.v1beta1.MsgJoinPool"
MSG_JOIN_SWAP_EXTERN = "/osmosis.gamm.v1beta1.MsgJoinSwapExternAmountIn"
MSG_EXIT_POOL = "/osmosis.gamm.v1beta1.MsgExitPool"
MSG_EXIT_SWAP_SHARE = "/osmosis.gamm.v1beta1.MsgExitSwapShareAmountIn"
MSG_LOCK_TOKENS = "/osmosis.lockup.MsgLockTokens"
MSG_BEGIN_UNLOCKING = "/osmosis.lockup.MsgBeginUnlocking"

# Message fields naming the account that signed (and paid for) the message
SIGNER_FIELDS = ("from_address", "sender", "delegator_address", "owner")

KNOWN_IBC_DECIMALS = {
    "ibc/498A0751C798A0D9A389AA3691123DADA57DAA4FE165D5C75894505B876BA6E4": 6,  # USDC (Noble)
    "ibc/27394FB092D2ECCD56123C74F36E4C1F926001CEADA9CA97EA622B25F41E5EB2": 6,  # ATOM
    "ibc/4ABBEF4C8926DDDB320AE5188CFD63267ABBCEFC0583E4AE05D6E5AA2401DDAB": 6,  # USDT (Kava)
    "ibc/D1542AA8762DB13087D8364F3EA6509FD6F009A34F00426AF9E4F9FA85CBBF1F": 8,  # WBTC
    "ibc/EA1D43981D5C9A1C4AAEA9C23BB1D4FA126BA9BC7020A25E0AE4AA841EA25DC5": 18,  # WETH
    "ibc/0CD3A0285E1341859B5E86B6AB7682F023D03E97607CCC1DC95706411D866DF7": 18,  # DAI
}

_COIN_PATTERN = re.compile(r"^(\d+)(.+)$")


def denom_decimals(denom: str) -> int:
    if denom in KNOWN_IBC_DECIMALS:
        return KNOWN_IBC_DECIMALS[denom]
    if denom.startswith("gamm/pool/"):
        return 18
    return 6


def denom_symbol(denom: str) -> str:
    """
    Map a Cosmos denom to a display symbol.

    Examples:
        "uosmo"                      → "OSMO"
        "gamm/pool/1"                → "GAMM-1"
        "ibc/27394FB092D2..."        → "IBC-27394F"
        "factory/osmo1.../alloyed/allBTC" → "BTC"
    """
    if denom == "uosmo":
        return "OSMO"
    if denom.startswith("factory/"):
        last = denom.rsplit("/", 1)[-1]
        if last.startswith("all"):
            last = last[len("all"):]
        return last.upper()
    if denom.startswith("gamm/pool/"):
        return f"GAMM-{denom[len('gamm/pool/'):]}"
    if denom.startswith("ibc/"):
        return f"IBC-{denom[len('ibc/'):][:6]}"
    return denom.upper()


@dataclass(frozen=True)
class Coin:
    amount: int  # base units
    denom: str

    @property
    def quantity(self) -> float:
        return self.amount / (10 ** denom_decimals(self.denom))

    @property
    def symbol(self) -> str:
        return denom_symbol(self.denom)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Coin":
        return cls(amount=int(data["amount"]), denom=str(data["denom"]))


def parse_coins(text: str) -> list[Coin]:
    """Parse an event amount such as "1000uosmo,25ibc/27394F..." into coins."""
    coins = []
    for part in text.split(","):
        match = _COIN_PATTERN.match(part.strip())
        if match:
            coins.append(Coin(amount=int(match.group(1)), denom=match.group(2)))
    return coins


@dataclass(frozen=True)
class CosmosEvent:
    type: str
    attributes: tuple[tuple[str, str], ...]

    def values(self, key: str) -> list[str]:
        return [value for k, value in self.attributes if k == key]


@dataclass(frozen=True)
class OsmosisTx:
    hash: str
    height: int
    timestamp: datetime
    code: int
    messages: tuple[dict[str, Any], ...]
    fee: tuple[Coin, ...]
    events: tuple[CosmosEvent, ...]

    @property
    def succeeded(self) -> bool:
        return self.code == 0

    def signed_by(self, address: str) -> bool:
        return any(msg.get(f) == address for msg in self.messages for f in SIGNER_FIELDS)

    def movements(self, event_type: str, party_key: str, address: str) -> list[Coin]:
        """Coins moved to/from address in events of event_type, pairing each amount with the party before it."""
        coins: list[Coin] = []
        for event in self.events:
            if event.type != event_type:
                continue
            party: Optional[str] = None
            for key, value in event.attributes:
                if key == party_key:
                    party = value
                elif key == "amount" and party == address:
                    coins.extend(parse_coins(value))
        return coins

    def received_by(self, address: str) -> list[Coin]:
        return self.movements("coin_received", "receiver", address)

    def spent_by(self, address: str) -> list[Coin]:
        return self.movements("coin_spent", "spender", address)


def _short(address: Any, length: int = 12) -> str:
    return f"{str(address)[:length]}..."


class OsmosisConnector(BaseConnector):
    """
    Connector for Osmosis wallets via the Cosmos LCD REST API.

    Usage:
        connector = OsmosisConnector(fetcher, {"requests_per_second": 2})
        raw = await connector.fetch_raw_activity("osmo1...", TimeRange())
        records = connector.normalize_batch(raw, "osmo1...")
    """

    source_id = "osmosis"
    default_requests_per_second = 2.0
    default_base_url = "https://osmosis-rest.publicnode.com"
    PAGE_LIMIT = 100
    DEFAULT_MAX_PAGES = 50

    OPERATION_KINDS = frozenset(
        {
            MSG_SEND,
            MSG_IBC_TRANSFER,
            MSG_DELEGATE,
            MSG_UNDELEGATE,
            MSG_REDELEGATE,
            MSG_WITHDRAW_REWARD,
            MSG_SWAP_IN,
            MSG_SWAP_OUT,
            MSG_JOIN_POOL,
            MSG_JOIN_SWAP_EXTERN,
            MSG_EXIT_POOL,
            MSG_EXIT_SWAP_SHARE,
            MSG_LOCK_TOKENS,
            MSG_BEGIN_UNLOCKING,
        }
    )
    DISPATCH = {
        MSG_SEND: "_on_send",
        MSG_IBC_TRANSFER: "_on_ibc_transfer",
        MSG_DELEGATE: "_on_delegate",
        MSG_UNDELEGATE: "_on_undelegate",
        MSG_REDELEGATE: "_on_redelegate",
        MSG_WITHDRAW_REWARD: "_on_withdraw_reward",
        MSG_SWAP_IN: "_on_swap_in",
        MSG_SWAP_OUT: "_on_swap_out",
        MSG_JOIN_POOL: "_on_join_pool",
        MSG_JOIN_SWAP_EXTERN: "_on_join_pool",
        MSG_EXIT_POOL: "_on_exit_pool",
        MSG_EXIT_SWAP_SHARE: "_on_exit_pool",
        MSG_LOCK_TOKENS: "_on_lock_tokens",
        MSG_BEGIN_UNLOCKING: "_on_begin_unlocking",
    }

    def __init__(
        self,
        fetcher: ResilientFetcher,
        config: Optional[Mapping[str, Any]] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(fetcher, config, limiter)
        self.attributes_base64 = bool(self.config.get("attributes_base64", False))
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
        for query in (f"message.sender='{identity}'", f"transfer.recipient='{identity}'"):
            for tx_response in await self._search(query, cancel_token):
                tx_hash = tx_response.get("txhash")
                if tx_hash in seen:
                    continue
                seen.add(tx_hash)
                events.append(tx_response)

        events.sort(key=lambda e: int(e.get("height") or 0), reverse=True)
        logger.info("Osmosis fetched %d transactions | address=%s", len(events), identity)
        return events

    async def _search(self, query: str, cancel_token: Optional[CancellationToken]) -> list[RawEvent]:
        results: list[RawEvent] = []
        for page in range(1, self.max_pages + 1):
            data = await self._request_json(
                "cosmos/tx/v1beta1/txs",
                params={
                    "query": query,
                    "page": page,
                    "limit": self.PAGE_LIMIT,
                    "order_by": "ORDER_BY_DESC",
                },
                cancel_token=cancel_token,
            )
            batch = (data or {}).get("tx_responses") or []
            results.extend(batch)
            total = int((data or {}).get("total") or 0)
            if len(batch) < self.PAGE_LIMIT or (total and len(results) >= total):
                break
        else:
            logger.warning("Osmosis search truncated at %d pages | query=%s", self.max_pages, query)
        return results

    # ------------------------------------------------------------------
    # Normalize
    # ------------------------------------------------------------------

    def parse_event(self, raw: RawEvent) -> OsmosisTx:
        tx = raw.get("tx") or {}
        return OsmosisTx(
            hash=str(raw["txhash"]),
            height=int(raw.get("height") or 0),
            timestamp=parse_timestamp(raw["timestamp"]),
            code=int(raw.get("code") or 0),
            messages=tuple(tx.get("body", {}).get("messages") or ()),
            fee=tuple(Coin.from_dict(c) for c in tx.get("auth_info", {}).get("fee", {}).get("amount") or ()),
            events=tuple(self._parse_cosmos_event(e) for e in raw.get("events") or ()),
        )

    def _parse_cosmos_event(self, raw: dict[str, Any]) -> CosmosEvent:
        attributes = []
        for attr in raw.get("attributes") or ():
            key, value = attr.get("key") or "", attr.get("value") or ""
            if self.attributes_base64:
                key = base64.b64decode(key).decode("utf-8")
                value = base64.b64decode(value).decode("utf-8")
            attributes.append((key, value))
        return CosmosEvent(type=str(raw.get("type", "")), attributes=tuple(attributes))

    def normalize_event(self, tx: OsmosisTx, identity: str, price_lookup: PriceLookup) -> list[CanonicalTransaction]:
        signed = tx.signed_by(identity)

        if not tx.succeeded:
            if not signed:
                return []
            return self._fee_only(tx, price_lookup, f"Failed transaction (code {tx.code})")

        records: list[CanonicalTransaction] = []
        unknown: list[dict[str, Any]] = []
        for msg in tx.messages:
            kind = str(msg.get("@type", ""))
            if kind in self.DISPATCH:
                records.extend(self.dispatch(kind, msg, tx, identity, price_lookup))
            else:
                unknown.append(msg)

        if unknown and not records:
            records = self.reconstruct_from_balance_changes(unknown, tx, identity, price_lookup)

        if not signed:
            return records
        if not records:
            return self._fee_only(tx, price_lookup, "Transaction fee")
        fee = self._fee(tx)
        if fee is not None:
            records[0] = self._with_fee(records[0], fee)
        return records

    def reconstruct_from_balance_changes(
        self, operation: Any, tx: OsmosisTx, identity: str, price_lookup: PriceLookup
    ) -> list[CanonicalTransaction]:
        """Rebuild unrecognized messages from the coin_received / coin_spent events addressed to the wallet."""
        spent = tx.spent_by(identity)
        fee = self._fee(tx)
        if fee is not None and tx.signed_by(identity) and fee in spent:
            spent.remove(fee)  # the fee deduction is itself a coin_spent event

        records = [
            self._received(TransactionKind.TRANSFER_RECEIVED, coin, tx, price_lookup, "Token received")
            for coin in tx.received_by(identity)
        ]
        records.extend(
            self._sent(TransactionKind.TRANSFER_SENT, coin, tx, price_lookup, "Token sent") for coin in spent
        )
        return records

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    def _on_send(self, msg, tx, identity, price_lookup):
        records = []
        for coin in (Coin.from_dict(c) for c in msg.get("amount") or ()):
            if msg.get("to_address") == identity:
                records.append(
                    self._received(
                        TransactionKind.TRANSFER_RECEIVED, coin, tx, price_lookup,
                        f"Received from {_short(msg.get('from_address'))}",
                    )
                )
            if msg.get("from_address") == identity:
                records.append(
                    self._sent(
                        TransactionKind.TRANSFER_SENT, coin, tx, price_lookup,
                        f"Sent to {_short(msg.get('to_address'))}",
                    )
                )
        return records

    def _on_ibc_transfer(self, msg, tx, identity, price_lookup):
        if msg.get("sender") != identity:
            return []
        coin = Coin.from_dict(msg["token"])
        note = f"IBC transfer to {_short(msg.get('receiver'))} via {msg.get('source_channel', '?')}"
        return [self._sent(TransactionKind.INTERNAL_MOVE, coin, tx, price_lookup, note)]

    def _on_delegate(self, msg, tx, identity, price_lookup):
        coin = Coin.from_dict(msg["amount"])
        note = f"Delegated to {_short(msg.get('validator_address'), 16)}"
        return [self._sent(TransactionKind.STAKE, coin, tx, price_lookup, note)]

    def _on_undelegate(self, msg, tx, identity, price_lookup):
        coin = Coin.from_dict(msg["amount"])
        note = f"Undelegated from {_short(msg.get('validator_address'), 16)}"
        return [self._received(TransactionKind.UNSTAKE, coin, tx, price_lookup, note)]

    def _on_redelegate(self, msg, tx, identity, price_lookup):
        # Ownership does not change, so no amounts are booked
        coin = Coin.from_dict(msg["amount"])
        note = (
            f"Redelegated {coin.quantity:g} {coin.symbol} from "
            f"{_short(msg.get('validator_src_address'))} to {_short(msg.get('validator_dst_address'))}"
        )
        return [self.entry(TransactionKind.STAKE, tx.timestamp, tx.hash, price_lookup, notes=note)]

    def _on_withdraw_reward(self, msg, tx, identity, price_lookup):
        validator = msg.get("validator_address")
        rewards: list[Coin] = []
        for event in tx.events:
            if event.type != "withdraw_rewards":
                continue
            validators = event.values("validator")
            if validators and validator not in validators:
                continue
            for amount in event.values("amount"):
                rewards.extend(parse_coins(amount))
        if not rewards:
            rewards = tx.received_by(identity)

        note = f"Staking reward from {_short(validator, 16)}"
        return [self._received(TransactionKind.REWARD, coin, tx, price_lookup, note) for coin in rewards]

    def _on_swap_in(self, msg, tx, identity, price_lookup):
        token_in = Coin.from_dict(msg["token_in"])
        routes = msg.get("routes") or []
        out_denom = routes[-1].get("token_out_denom") if routes else None
        token_out = _pick(tx.received_by(identity), out_denom)
        return [self._swap(token_in, token_out, tx, price_lookup)]

    def _on_swap_out(self, msg, tx, identity, price_lookup):
        token_out = Coin.from_dict(msg["token_out"])
        routes = msg.get("routes") or []
        in_denom = routes[0].get("token_in_denom") if routes else None
        token_in = _pick(tx.spent_by(identity), in_denom)
        return [self._swap(token_in, token_out, tx, price_lookup)]

    def _on_join_pool(self, msg, tx, identity, price_lookup):
        coins = msg.get("token_in_maxs") or ([msg["token_in"]] if msg.get("token_in") else [])
        note = f"Added liquidity to pool {msg.get('pool_id')}"
        return [
            self._sent(TransactionKind.TRANSFER_SENT, Coin.from_dict(c), tx, price_lookup, note) for c in coins
        ]

    def _on_exit_pool(self, msg, tx, identity, price_lookup):
        coins = msg.get("token_out_mins") or []
        if not coins and msg.get("token_out_denom"):
            coins = [{"denom": msg["token_out_denom"], "amount": msg.get("token_out_min_amount") or 0}]
        note = f"Removed liquidity from pool {msg.get('pool_id')}"
        return [
            self._received(TransactionKind.TRANSFER_RECEIVED, Coin.from_dict(c), tx, price_lookup, note)
            for c in coins
        ]

    def _on_lock_tokens(self, msg, tx, identity, price_lookup):
        records = []
        for coin in (Coin.from_dict(c) for c in msg.get("coins") or ()):
            note = f"Locked {coin.symbol} for {msg.get('duration')}"
            records.append(self._sent(TransactionKind.STAKE, coin, tx, price_lookup, note))
        return records

    def _on_begin_unlocking(self, msg, tx, identity, price_lookup):
        records = []
        for coin in (Coin.from_dict(c) for c in msg.get("coins") or ()):
            note = f"Unlocking {coin.symbol} (lock ID: {msg.get('ID')})"
            records.append(self._received(TransactionKind.UNSTAKE, coin, tx, price_lookup, note))
        return records

    # ------------------------------------------------------------------
    # Record builders
    # ------------------------------------------------------------------

    def _sent(self, kind, coin: Coin, tx: OsmosisTx, price_lookup, note: str) -> CanonicalTransaction:
        return self.entry(
            kind, tx.timestamp, tx.hash, price_lookup,
            sent_amount=coin.quantity, sent_currency=coin.symbol, notes=note,
        )

    def _received(self, kind, coin: Coin, tx: OsmosisTx, price_lookup, note: str) -> CanonicalTransaction:
        return self.entry(
            kind, tx.timestamp, tx.hash, price_lookup,
            received_amount=coin.quantity, received_currency=coin.symbol, notes=note,
        )

    def _swap(self, token_in: Optional[Coin], token_out: Optional[Coin], tx, price_lookup) -> CanonicalTransaction:
        in_symbol = token_in.symbol if token_in else "unknown"
        out_symbol = token_out.symbol if token_out else "unknown"
        return self.entry(
            TransactionKind.TRADE, tx.timestamp, tx.hash, price_lookup,
            sent_amount=token_in.quantity if token_in else None,
            sent_currency=token_in.symbol if token_in else None,
            received_amount=token_out.quantity if token_out else None,
            received_currency=token_out.symbol if token_out else None,
            notes=f"Swap {in_symbol} for {out_symbol}",
        )

    def _fee_only(self, tx: OsmosisTx, price_lookup, note: str) -> list[CanonicalTransaction]:
        fee = self._fee(tx)
        if fee is None:
            return []
        entry = self.entry(TransactionKind.TRANSFER_SENT, tx.timestamp, tx.hash, price_lookup, notes=note)
        return [self._with_fee(entry, fee)]

    @staticmethod
    def _fee(tx: OsmosisTx) -> Optional[Coin]:
        for coin in tx.fee:
            if coin.denom == "uosmo" and coin.amount > 0:
                return coin
        return next((coin for coin in tx.fee if coin.amount > 0), None)

    @staticmethod
    def _with_fee(entry: CanonicalTransaction, fee: Coin) -> CanonicalTransaction:
        return replace(entry, fee_amount=fee.quantity, fee_currency=fee.symbol)


def _pick(coins: list[Coin], denom: Optional[str]) -> Optional[Coin]:
    """Last coin of denom (the fee deduction, when present, comes first), else the first coin."""
    if denom:
        matching = [c for c in coins if c.denom == denom]
        if matching:
            return matching[-1]
    return coins[0] if coins else None
