"""
MOD-001: review flags for canonical transactions.

Reasons (an entry may collect several):
- Missing fiat price: the batch is priced elsewhere but this valued entry is not
- Unusual amount: |sent|+|received| more than 3σ from the batch mean (≥5 samples)
- Zero value with fees: nothing moved but a fee was paid (approvals, failed txs)
- Self-transfer: the same currency was both sent and received
"""

import logging
from typing import Sequence

from ..framework.base_detector import BaseDetector, is_outlier, population_stats
from ..framework.models import CanonicalTransaction

logger = logging.getLogger(__name__)

MISSING_FIAT_PRICE = "Missing fiat price"
UNUSUAL_AMOUNT = "Unusual amount (statistical outlier)"
ZERO_VALUE_WITH_FEES = "Zero value with fees (possible approval or failed tx)"
SELF_TRANSFER = "Self-transfer (same currency sent and received)"


def _positive(value: float | None) -> bool:
    return value is not None and value > 0


class TransactionAnomalyDetector(BaseDetector[CanonicalTransaction]):
    module_id = "MOD-001"
    detector_name = "transaction-anomaly"
    record_type = CanonicalTransaction

    def flag(self, entries: Sequence[CanonicalTransaction]) -> list[list[str]]:
        batch_is_priced = any(_positive(e.fiat_price_at_time) for e in entries)
        stats = population_stats([m for m in (e.magnitude for e in entries) if m > 0])

        flags = [self._reasons(e, batch_is_priced, stats) for e in entries]
        flagged = sum(1 for reasons in flags if reasons)
        if flagged:
            logger.info("%s flagged %d/%d entries", self.detector_name, flagged, len(entries))
        return flags

    @staticmethod
    def _reasons(
        entry: CanonicalTransaction,
        batch_is_priced: bool,
        stats: tuple[float, float] | None,
    ) -> list[str]:
        reasons: list[str] = []
        has_value = _positive(entry.sent_amount) or _positive(entry.received_amount)

        if batch_is_priced and not _positive(entry.fiat_price_at_time) and has_value:
            reasons.append(MISSING_FIAT_PRICE)

        magnitude = entry.magnitude
        if magnitude > 0 and is_outlier(magnitude, stats):
            reasons.append(UNUSUAL_AMOUNT)

        if not entry.sent_amount and not entry.received_amount and entry.fee_amount > 0:
            reasons.append(ZERO_VALUE_WITH_FEES)

        if (
            entry.sent_currency
            and entry.sent_currency == entry.received_currency
            and _positive(entry.sent_amount)
            and _positive(entry.received_amount)
        ):
            reasons.append(SELF_TRANSFER)

        return reasons
