"""MOD-002: review flags for derivatives (fills and funding payments)."""

import logging
from typing import Sequence

from ..framework.base_detector import BaseDetector, is_outlier, population_stats
from ..framework.models import DerivativesTransaction, PositionTag

logger = logging.getLogger(__name__)

ZERO_PNL_ON_CLOSE = "Zero P&L on close position"
UNUSUAL_PNL = "Unusual P&L (statistical outlier)"


class DerivativesAnomalyDetector(BaseDetector[DerivativesTransaction]):
    module_id = "MOD-002"
    detector_name = "derivatives-anomaly"
    record_type = DerivativesTransaction

    def flag(self, entries: Sequence[DerivativesTransaction]) -> list[list[str]]:
        # Zero P&L is excluded from the sample: opens and transfers carry none
        stats = population_stats([e.realized_pnl for e in entries if e.realized_pnl != 0])

        flags: list[list[str]] = []
        for entry in entries:
            reasons: list[str] = []
            if entry.position_tag == PositionTag.CLOSE_POSITION and entry.realized_pnl == 0:
                reasons.append(ZERO_PNL_ON_CLOSE)
            if entry.realized_pnl != 0 and is_outlier(entry.realized_pnl, stats):
                reasons.append(UNUSUAL_PNL)
            flags.append(reasons)

        flagged = sum(1 for reasons in flags if reasons)
        if flagged:
            logger.info("%s flagged %d/%d entries", self.detector_name, flagged, len(entries))
        return flags
