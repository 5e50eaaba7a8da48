"""
Canonical record types shared by every source adapter.

Two record shapes leave the adapters:
- CanonicalTransaction: one taxable economic event (transfers, staking, trades, ...)
- DerivativesTransaction: one margin/perpetual event (fills, funding payments)

Both are frozen dataclasses. Adapters create them; detectors return annotated
copies via dataclasses.replace(); nothing else changes them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union


class TransactionKind(str, Enum):
    TRANSFER_SENT = "transfer_sent"
    TRANSFER_RECEIVED = "transfer_received"
    STAKE = "stake"
    UNSTAKE = "unstake"
    REWARD = "reward"
    TRADE = "trade"
    INTERNAL_MOVE = "internal_move"
    LOSS = "loss"


class ClassificationTag(str, Enum):
    PAYMENT = "payment"
    RECEIVE = "receive"
    STAKING_DEPOSIT = "staking_deposit"
    UNSTAKING_WITHDRAW = "unstaking_withdraw"
    CLAIM_REWARDS = "claim_rewards"
    TRADE = "trade"
    WALLET_TRANSFER = "wallet_transfer"
    LOST = "lost"


class PositionTag(str, Enum):
    OPEN_POSITION = "open_position"
    CLOSE_POSITION = "close_position"
    FUNDING_PAYMENT = "funding_payment"


CLASSIFICATION_TABLE: dict[TransactionKind, ClassificationTag] = {
    TransactionKind.TRANSFER_SENT: ClassificationTag.PAYMENT,
    TransactionKind.TRANSFER_RECEIVED: ClassificationTag.RECEIVE,
    TransactionKind.STAKE: ClassificationTag.STAKING_DEPOSIT,
    TransactionKind.UNSTAKE: ClassificationTag.UNSTAKING_WITHDRAW,
    TransactionKind.REWARD: ClassificationTag.CLAIM_REWARDS,
    TransactionKind.TRADE: ClassificationTag.TRADE,
    TransactionKind.INTERNAL_MOVE: ClassificationTag.WALLET_TRANSFER,
    TransactionKind.LOSS: ClassificationTag.LOST,
}

_unclassified = set(TransactionKind) - set(CLASSIFICATION_TABLE)
if _unclassified:
    raise RuntimeError(f"TransactionKind values without a tag: {sorted(_unclassified)}")

# Date-keyed ("YYYY-MM-DD") unit price lookup supplied by the caller.
PriceLookup = Callable[[str], Optional[float]]


def classify(kind: TransactionKind) -> ClassificationTag:
    """Map a transaction kind to its output tag. Pure table lookup."""
    return CLASSIFICATION_TABLE[kind]


def no_prices(_date: str) -> Optional[float]:
    return None


def price_lookup_from_mapping(prices: Mapping[str, float]) -> PriceLookup:
    """Adapt a {"YYYY-MM-DD": price} mapping to the PriceLookup callable."""

    def lookup(date_str: str) -> Optional[float]:
        price = prices.get(date_str)
        return float(price) if price is not None else None

    return lookup


def to_utc(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime (naive values are taken to be UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO 8601 UTC with millisecond precision and Z suffix."""
    dt = to_utc(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp (Z or offset suffix) into an aware UTC datetime."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(text))


def date_key(dt: datetime) -> str:
    """YYYY-MM-DD of dt in UTC, the key format of PriceLookup."""
    return to_utc(dt).strftime("%Y-%m-%d")


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class CanonicalTransaction:
    """
    One taxable economic event, source-agnostic.

    classification_tag is derived from kind and cannot be passed in.
    """

    id: str
    kind: TransactionKind
    timestamp: datetime
    origin_hash: str
    sent_amount: Optional[float] = None
    sent_currency: Optional[str] = None
    received_amount: Optional[float] = None
    received_currency: Optional[str] = None
    fee_amount: float = 0.0
    fee_currency: str = ""
    notes: str = ""
    fiat_price_at_time: Optional[float] = None
    source_id: str = ""
    ambiguity_flag: bool = False
    ambiguity_reasons: tuple[str, ...] = ()
    classification_tag: ClassificationTag = field(init=False)

    def __post_init__(self) -> None:
        if self.fee_amount < 0:
            raise ValueError(f"fee_amount must be non-negative, got {self.fee_amount}")
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        object.__setattr__(self, "classification_tag", classify(self.kind))

    record_type = "canonical"

    @property
    def magnitude(self) -> float:
        """|sent| + |received|, the quantity the outlier rule works on."""
        return abs(self.sent_amount or 0.0) + abs(self.received_amount or 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_type": self.record_type,
            "id": self.id,
            "kind": self.kind.value,
            "timestamp": format_timestamp(self.timestamp),
            "origin_hash": self.origin_hash,
            "sent_amount": self.sent_amount,
            "sent_currency": self.sent_currency,
            "received_amount": self.received_amount,
            "received_currency": self.received_currency,
            "fee_amount": self.fee_amount,
            "fee_currency": self.fee_currency,
            "notes": self.notes,
            "classification_tag": self.classification_tag.value,
            "fiat_price_at_time": self.fiat_price_at_time,
            "source_id": self.source_id,
            "ambiguity_flag": self.ambiguity_flag,
            "ambiguity_reasons": list(self.ambiguity_reasons),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanonicalTransaction":
        return cls(
            id=str(data["id"]),
            kind=TransactionKind(data["kind"]),
            timestamp=parse_timestamp(data["timestamp"]),
            origin_hash=str(data["origin_hash"]),
            sent_amount=_optional_float(data.get("sent_amount")),
            sent_currency=data.get("sent_currency"),
            received_amount=_optional_float(data.get("received_amount")),
            received_currency=data.get("received_currency"),
            fee_amount=float(data.get("fee_amount") or 0.0),
            fee_currency=data.get("fee_currency") or "",
            notes=data.get("notes") or "",
            fiat_price_at_time=_optional_float(data.get("fiat_price_at_time")),
            source_id=data.get("source_id") or "",
            ambiguity_flag=bool(data.get("ambiguity_flag", False)),
            ambiguity_reasons=tuple(data.get("ambiguity_reasons") or ()),
        )


@dataclass(frozen=True)
class DerivativesTransaction:
    """One margin/perpetual-position event (trade fill or funding payment)."""

    id: str
    timestamp: datetime
    asset: str
    amount: float
    fee: float
    realized_pnl: float
    payment_token: str
    position_tag: PositionTag
    origin_hash: str = ""
    notes: str = ""
    source_id: str = ""
    ambiguity_flag: bool = False
    ambiguity_reasons: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        if not self.origin_hash:
            object.__setattr__(self, "origin_hash", self.id)

    record_type = "derivatives"

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_type": self.record_type,
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "asset": self.asset,
            "amount": self.amount,
            "fee": self.fee,
            "realized_pnl": self.realized_pnl,
            "payment_token": self.payment_token,
            "position_tag": self.position_tag.value,
            "origin_hash": self.origin_hash,
            "notes": self.notes,
            "source_id": self.source_id,
            "ambiguity_flag": self.ambiguity_flag,
            "ambiguity_reasons": list(self.ambiguity_reasons),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DerivativesTransaction":
        return cls(
            id=str(data["id"]),
            timestamp=parse_timestamp(data["timestamp"]),
            asset=str(data["asset"]),
            amount=float(data["amount"]),
            fee=float(data.get("fee") or 0.0),
            realized_pnl=float(data.get("realized_pnl") or 0.0),
            payment_token=str(data.get("payment_token") or ""),
            position_tag=PositionTag(data["position_tag"]),
            origin_hash=data.get("origin_hash") or "",
            notes=data.get("notes") or "",
            source_id=data.get("source_id") or "",
            ambiguity_flag=bool(data.get("ambiguity_flag", False)),
            ambiguity_reasons=tuple(data.get("ambiguity_reasons") or ()),
        )


LedgerRecord = Union[CanonicalTransaction, DerivativesTransaction]

_RECORD_TYPES: dict[str, Any] = {
    CanonicalTransaction.record_type: CanonicalTransaction,
    DerivativesTransaction.record_type: DerivativesTransaction,
}


def record_from_dict(data: Mapping[str, Any]) -> LedgerRecord:
    """Rebuild a record serialized with to_dict(), dispatching on record_type."""
    record_cls = _RECORD_TYPES.get(data.get("record_type", CanonicalTransaction.record_type))
    if record_cls is None:
        raise ValueError(f"Unknown record_type: {data.get('record_type')!r}")
    return record_cls.from_dict(data)
