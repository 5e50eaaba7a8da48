"""Summary statistics stored alongside a finished batch."""

from collections import Counter, defaultdict
from typing import Any, Sequence

from .models import CanonicalTransaction, DerivativesTransaction, LedgerRecord, PositionTag


def summarize(batch: Sequence[LedgerRecord]) -> dict[str, Any]:
    """
    Build the JSON-serializable summary of a merged, flagged batch.

    Canonical and derivatives entries are summarized separately; a section is
    omitted when the batch holds no entry of that type.
    """
    canonical = [e for e in batch if isinstance(e, CanonicalTransaction)]
    derivatives = [e for e in batch if isinstance(e, DerivativesTransaction)]

    summary: dict[str, Any] = {
        "total_transactions": len(batch),
        "flagged": sum(1 for e in batch if e.ambiguity_flag),
        "sources": sorted({e.source_id for e in batch if e.source_id}),
    }
    if canonical:
        summary["canonical"] = _summarize_canonical(canonical)
    if derivatives:
        summary["derivatives"] = _summarize_derivatives(derivatives)
    return summary


def _summarize_canonical(entries: Sequence[CanonicalTransaction]) -> dict[str, Any]:
    fees: dict[str, float] = defaultdict(float)
    assets: set[str] = set()
    for entry in entries:
        if entry.fee_amount > 0 and entry.fee_currency:
            fees[entry.fee_currency] += entry.fee_amount
        if entry.sent_currency:
            assets.add(entry.sent_currency)
        if entry.received_currency:
            assets.add(entry.received_currency)

    return {
        "count": len(entries),
        "by_kind": dict(Counter(e.kind.value for e in entries)),
        "by_tag": dict(Counter(e.classification_tag.value for e in entries)),
        "fees": dict(fees),
        "assets": sorted(assets),
    }


def _summarize_derivatives(entries: Sequence[DerivativesTransaction]) -> dict[str, Any]:
    tags = Counter(e.position_tag for e in entries)
    return {
        "count": len(entries),
        "open_positions": tags[PositionTag.OPEN_POSITION],
        "close_positions": tags[PositionTag.CLOSE_POSITION],
        "funding_payments": tags[PositionTag.FUNDING_PAYMENT],
        "total_pnl": sum(e.realized_pnl for e in entries),
        "total_fees": sum(e.fee for e in entries),
        "assets": sorted({e.asset for e in entries}),
    }
