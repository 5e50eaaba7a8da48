"""
Request orchestration from cache lookup to cached, flagged batch.

PipelineRunner coordinates one request:
1. Cache lookup by request identity (ResultCache)
2. Fetch + normalize per source, sequentially (BaseConnector)
3. Date-range filter, merge and dedup across sources
4. Flagging by every active detector (BaseDetector)
5. Summary and cache write

Stages run strictly in that order; each consumes the previous stage's
complete output.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from ..exceptions import Cancelled, LedgerIngestError, UnknownSourceError
from ..transport.fetch_with_retry import CancellationToken
from .base_connector import BaseConnector
from .base_detector import BaseDetector
from .date_filter import TimeRange, filter_by_date_range
from .identity import build_cache_key
from .merge import merge
from .models import LedgerRecord, PriceLookup
from .result_cache import ResultCache
from .summary import summarize

logger = logging.getLogger(__name__)

ON_SOURCE_FAILURE_FAIL = "fail"
ON_SOURCE_FAILURE_SKIP = "skip"


@dataclass(frozen=True)
class PipelineResult:
    cache_key: str
    transactions: list[LedgerRecord]
    summary: dict[str, Any] = field(default_factory=dict)
    from_cache: bool = False
    failed_sources: dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed_sources


class PipelineRunner:
    """
    Usage:
        runner = PipelineRunner({"osmosis": osmosis}, detectors=[TransactionAnomalyDetector()], cache=cache)
        result = await runner.run(["osmosis"], "osmo1...", TimeRange("2024-01-01", "2024-12-31"))

    on_source_failure decides what one failing source does to a multi-source request:
        "fail"  the terminal fetch error propagates and nothing is cached
        "skip"  the error is logged, recorded in PipelineResult.failed_sources, and the
                remaining sources still run; the partial result is returned uncached
    """

    def __init__(
        self,
        connectors: Mapping[str, BaseConnector],
        detectors: Sequence[BaseDetector] = (),
        cache: Optional[ResultCache] = None,
        on_source_failure: str = ON_SOURCE_FAILURE_FAIL,
    ):
        if on_source_failure not in (ON_SOURCE_FAILURE_FAIL, ON_SOURCE_FAILURE_SKIP):
            raise ValueError(f"on_source_failure must be 'fail' or 'skip', got {on_source_failure!r}")
        self.connectors = dict(connectors)
        self.detectors = list(detectors)
        self.cache = cache
        self.on_source_failure = on_source_failure

    async def run(
        self,
        source_ids: Sequence[str],
        subject_id: str,
        time_range: Optional[TimeRange] = None,
        price_lookup: Optional[PriceLookup] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """
        Produce the merged, flagged batch for subject_id across source_ids.

        Raises:
            UnknownSourceError: a source id has no configured connector
            Cancelled: cancel_token fired (never downgraded to a skipped source)
            LedgerIngestError: a source failed and on_source_failure is "fail"
        """
        time_range = time_range or TimeRange()
        for source_id in source_ids:
            if source_id not in self.connectors:
                raise UnknownSourceError(source_id)

        cache_key = build_cache_key(
            "+".join(source_ids), subject_id, time_range.start_date, time_range.end_date
        )
        if self.cache is not None:
            hit = self.cache.get(cache_key)
            if hit is not None:
                logger.info("PipelineRunner cache hit | key=%s | transactions=%d", cache_key, len(hit.transactions))
                return PipelineResult(cache_key, hit.transactions, hit.summary, from_cache=True)

        batches: list[list[LedgerRecord]] = []
        failed: dict[str, str] = {}
        subject = subject_id.strip()
        for source_id in source_ids:
            connector = self.connectors[source_id]
            try:
                batches.append(await self._run_source(connector, subject, time_range, price_lookup, cancel_token))
            except Cancelled:
                raise
            except LedgerIngestError as exc:
                if self.on_source_failure == ON_SOURCE_FAILURE_FAIL:
                    raise
                logger.warning("PipelineRunner source failed, skipping | source=%s | error=%s", source_id, exc)
                failed[source_id] = str(exc)

        transactions = merge(*batches)
        for detector in self.detectors:
            transactions = detector.detect(transactions)
        summary = summarize(transactions)

        if self.cache is not None:
            if failed:
                logger.info("PipelineRunner not caching partial result | key=%s | failed=%s", cache_key, sorted(failed))
            else:
                self.cache.set(cache_key, transactions, summary)

        logger.info(
            "PipelineRunner finished | key=%s | transactions=%d | flagged=%d",
            cache_key,
            len(transactions),
            summary["flagged"],
        )
        return PipelineResult(cache_key, transactions, summary, failed_sources=failed)

    async def _run_source(
        self,
        connector: BaseConnector,
        subject_id: str,
        time_range: TimeRange,
        price_lookup: Optional[PriceLookup],
        cancel_token: Optional[CancellationToken],
    ) -> list[LedgerRecord]:
        raw_events = await connector.fetch_raw_activity(subject_id, time_range, cancel_token)
        records = connector.normalize_batch(raw_events, subject_id, price_lookup)
        records = filter_by_date_range(records, time_range)
        logger.info(
            "PipelineRunner source done | source=%s | raw=%d | records=%d",
            connector.source_id,
            len(raw_events),
            len(records),
        )
        return records
