"""
Base detector abstraction for review flagging.

Every detector (transaction anomalies, derivatives anomalies, ...) inherits
from BaseDetector and implements flag(): given the detector's slice of a
merged batch, return the review reasons for each entry. detect() does the
bookkeeping shared by all detectors:
1. Selecting the entries of the detector's record type
2. Appending reasons to copies of the flagged entries (never mutating amounts)
3. Returning a batch of the same length and order as the input
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from statistics import mean, pstdev
from typing import Generic, Optional, Sequence, TypeVar

from .models import LedgerRecord

R = TypeVar("R", bound=LedgerRecord)

OUTLIER_STD_MULTIPLIER = 3.0
MIN_OUTLIER_SAMPLES = 5


def population_stats(values: Sequence[float]) -> Optional[tuple[float, float]]:
    """
    Mean and population standard deviation of values.

    Returns None below MIN_OUTLIER_SAMPLES or when every value is identical,
    in which case no outlier can be called.
    """
    if len(values) < MIN_OUTLIER_SAMPLES:
        return None
    center = mean(values)
    std = pstdev(values, center)
    if std <= 0:
        return None
    return center, std


def is_outlier(value: float, stats: Optional[tuple[float, float]]) -> bool:
    if stats is None:
        return False
    mean, std = stats
    return abs(value - mean) > OUTLIER_STD_MULTIPLIER * std


class BaseDetector(ABC, Generic[R]):
    """
    Abstract base class for batch flagging logic.

    Subclasses implement specific detectors (TransactionAnomalyDetector, DerivativesAnomalyDetector).
    """

    # Subclasses override these
    module_id: str  # e.g., "MOD-001"
    detector_name: str  # e.g., "transaction-anomaly"
    record_type: type  # CanonicalTransaction or DerivativesTransaction

    @abstractmethod
    def flag(self, entries: Sequence[R]) -> list[list[str]]:
        """
        Compute review reasons for every entry.

        Args:
            entries: All entries of this detector's record type, in batch order

        Returns:
            One list of reasons per entry (empty when the entry is clean),
            same length and order as entries
        """

    def detect(self, batch: Sequence[LedgerRecord]) -> list[LedgerRecord]:
        """Apply flag() to this detector's record type; other entries pass through untouched."""
        positions = [i for i, entry in enumerate(batch) if isinstance(entry, self.record_type)]
        result = list(batch)
        if not positions:
            return result

        reasons_per_entry = self.flag([batch[i] for i in positions])  # type: ignore[misc]
        for position, reasons in zip(positions, reasons_per_entry):
            if reasons:
                result[position] = annotate(batch[position], reasons)
        return result


def annotate(entry: R, reasons: Sequence[str]) -> R:
    """Return a flagged copy of entry with reasons appended to any existing ones."""
    return replace(
        entry,
        ambiguity_flag=True,
        ambiguity_reasons=tuple(entry.ambiguity_reasons) + tuple(reasons),
    )
