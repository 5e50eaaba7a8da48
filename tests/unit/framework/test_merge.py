"""
Unit tests for merge(), cache-key identity and date-range filtering.

Tests cover:
- merged ids are unique, first occurrence wins
- output sorted ascending by timestamp, stable for ties
- inputs are not modified
- cache keys are deterministic and normalized
- inclusive whole-day UTC range filtering
"""

from datetime import datetime, timezone

import pytest

from ledger_ingest.framework.date_filter import TimeRange, filter_by_date_range
from ledger_ingest.framework.identity import build_cache_key, origin_entry_id
from ledger_ingest.framework.merge import merge
from ledger_ingest.framework.models import CanonicalTransaction, TransactionKind


def _tx(tx_id: str, day: int, hour: int = 0, notes: str = "") -> CanonicalTransaction:
    return CanonicalTransaction(
        id=tx_id,
        kind=TransactionKind.TRANSFER_RECEIVED,
        timestamp=datetime(2024, 1, day, hour, tzinfo=timezone.utc),
        origin_hash=tx_id,
        received_amount=1.0,
        received_currency="KAS",
        notes=notes,
    )


class TestMerge:
    def test_duplicate_ids_first_wins(self) -> None:
        first = _tx("a", 1, notes="first")
        second = _tx("a", 2, notes="second")
        merged = merge([first], [second])
        assert len(merged) == 1
        assert merged[0].notes == "first"

    def test_ids_unique(self) -> None:
        merged = merge([_tx("a", 1), _tx("b", 2)], [_tx("b", 2), _tx("c", 3)], [_tx("a", 1)])
        ids = [tx.id for tx in merged]
        assert len(ids) == len(set(ids)) == 3

    def test_sorted_ascending(self) -> None:
        merged = merge([_tx("late", 5), _tx("early", 1)], [_tx("middle", 3)])
        assert [tx.id for tx in merged] == ["early", "middle", "late"]

    def test_equal_timestamps_keep_input_order(self) -> None:
        merged = merge([_tx("x", 1, 9), _tx("y", 1, 9)], [_tx("z", 1, 9)])
        assert [tx.id for tx in merged] == ["x", "y", "z"]

    def test_inputs_not_modified(self) -> None:
        batch = [_tx("b", 2), _tx("a", 1)]
        merge(batch)
        assert [tx.id for tx in batch] == ["b", "a"]

    def test_empty(self) -> None:
        assert merge() == []
        assert merge([], []) == []


class TestCacheKey:
    def test_deterministic(self) -> None:
        assert build_cache_key("osmosis", "osmo1abc", "2024-01-01", "2024-12-31") == build_cache_key(
            "osmosis", "osmo1abc", "2024-01-01", "2024-12-31"
        )

    def test_normalized(self) -> None:
        assert build_cache_key(" Osmosis ", "OSMO1ABC ", "2024-01-01") == "osmosis:osmo1abc:2024-01-01:"

    def test_open_bounds_empty(self) -> None:
        assert build_cache_key("xrpl", "rAbc") == "xrpl:rabc::"

    def test_distinct_ranges_distinct_keys(self) -> None:
        assert build_cache_key("xrpl", "r1", "2024-01-01") != build_cache_key("xrpl", "r1", None, "2024-01-01")

    def test_origin_entry_id(self) -> None:
        assert origin_entry_id("ABC", 2) == "ABC-2"


class TestDateFilter:
    def test_inclusive_whole_days(self) -> None:
        batch = [_tx("before", 1, 23), _tx("start", 2, 0), _tx("end", 3, 23), _tx("after", 4, 0)]
        kept = filter_by_date_range(batch, TimeRange("2024-01-02", "2024-01-03"))
        assert [tx.id for tx in kept] == ["start", "end"]

    def test_open_range_keeps_everything(self) -> None:
        batch = [_tx("a", 1), _tx("b", 9)]
        assert filter_by_date_range(batch, TimeRange()) == batch

    def test_start_only(self) -> None:
        kept = filter_by_date_range([_tx("a", 1), _tx("b", 9)], TimeRange(start_date="2024-01-05"))
        assert [tx.id for tx in kept] == ["b"]

    def test_invalid_date_rejected(self) -> None:
        with pytest.raises(ValueError):
            TimeRange("2024-13-01")

    def test_inverted_range_rejected(self) -> None:
        with pytest.raises(ValueError, match="after end date"):
            TimeRange("2024-02-01", "2024-01-01")
