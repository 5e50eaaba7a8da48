"""
TTL + bounded-size cache of finished pipeline results.

The whole cache is one JSON object stored under a single key of an injected
KeyValueStore:

    {
      "<cache key>": {
        "cached_at": 1718000000.0,     # epoch seconds, refreshed on every hit
        "ttl": 1800,
        "transactions": [ {...}, ... ], # record.to_dict() output
        "summary": { ... }
      },
      ...
    }

Every operation is read-modify-write of that object. Concurrent writers race
with last-writer-wins semantics. Anything that fails to decode is a cold cache,
and store failures never reach the caller.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from ..exceptions import CacheCorrupted
from .identity import build_cache_key
from .models import LedgerRecord, record_from_dict
from .stores import KeyValueStore

logger = logging.getLogger(__name__)

__all__ = ["CACHE_STORAGE_KEY", "CachedResult", "ResultCache", "build_cache_key"]

CACHE_STORAGE_KEY = "ledger_tx_cache"
DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_MAX_ENTRIES = 50


@dataclass(frozen=True)
class CachedResult:
    transactions: list[LedgerRecord]
    summary: dict[str, Any] = field(default_factory=dict)
    cached_at: float = 0.0


class ResultCache:
    """
    Usage:
        cache = ResultCache(JsonFileStore(".ledger_cache.json"))
        key = build_cache_key("osmosis", "osmo1...", "2024-01-01", "2024-12-31")
        hit = cache.get(key)
        if hit is None:
            cache.set(key, transactions, summary)
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        storage_key: str = CACHE_STORAGE_KEY,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.store = store
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._storage_key = storage_key

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[CachedResult]:
        """Return the live entry for key (refreshing its recency) or None."""
        entries = self._load()
        entry = entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        try:
            cached_at = float(entry["cached_at"])
            ttl = float(entry.get("ttl", self.ttl))
            if now - cached_at > ttl:
                logger.info("ResultCache entry expired | key=%s | age=%.0fs", key, now - cached_at)
                del entries[key]
                self._save(entries)
                return None
            transactions = [record_from_dict(item) for item in entry["transactions"]]
            summary = dict(entry.get("summary") or {})
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("ResultCache entry malformed — treating as miss | key=%s | error=%s", key, exc)
            del entries[key]
            self._save(entries)
            return None

        entry["cached_at"] = now
        self._save(entries)
        logger.debug("ResultCache hit | key=%s | transactions=%d", key, len(transactions))
        return CachedResult(transactions=transactions, summary=summary, cached_at=now)

    def set(
        self,
        key: str,
        transactions: Sequence[LedgerRecord],
        summary: Optional[dict[str, Any]] = None,
        ttl: Optional[float] = None,
    ) -> None:
        """Store (or overwrite) the entry for key, then evict the oldest entries over max_entries."""
        entries = self._load()
        entries[key] = {
            "cached_at": self._clock(),
            "ttl": self.ttl if ttl is None else ttl,
            "transactions": [record.to_dict() for record in transactions],
            "summary": summary or {},
        }
        self._evict(entries)
        self._save(entries)

    def invalidate(self, key: str) -> None:
        entries = self._load()
        if entries.pop(key, None) is not None:
            self._save(entries)

    def clear(self) -> None:
        try:
            self.store.delete(self._storage_key)
        except Exception as exc:
            logger.warning("ResultCache clear failed | error=%s", exc)

    def __len__(self) -> int:
        return len(self._load())

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _evict(self, entries: dict[str, Any]) -> None:
        overflow = len(entries) - self.max_entries
        if overflow <= 0:
            return
        # sorted() is stable, so equal timestamps evict in insertion order
        oldest = sorted(entries, key=lambda k: _cached_at(entries[k]))[:overflow]
        for key in oldest:
            del entries[key]
        logger.info("ResultCache evicted %d entries | remaining=%d", len(oldest), len(entries))

    def _load(self) -> dict[str, Any]:
        try:
            raw = self.store.get(self._storage_key)
        except Exception as exc:
            logger.warning("ResultCache store read failed — treating as empty | error=%s", exc)
            return {}
        if raw is None:
            return {}
        try:
            return self._decode(raw)
        except CacheCorrupted as exc:
            logger.warning("ResultCache corrupted — clearing | error=%s", exc)
            self.clear()
            return {}

    @staticmethod
    def _decode(raw: str) -> dict[str, Any]:
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise CacheCorrupted(f"invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise CacheCorrupted(f"expected an object, got {type(data).__name__}")
        return {k: v for k, v in data.items() if isinstance(v, dict)}

    def _save(self, entries: dict[str, Any]) -> None:
        try:
            self.store.set(self._storage_key, json.dumps(entries))
        except Exception as exc:
            logger.warning("ResultCache store write failed | entries=%d | error=%s", len(entries), exc)


def _cached_at(entry: dict[str, Any]) -> float:
    try:
        return float(entry.get("cached_at", 0.0))
    except (TypeError, ValueError):
        return 0.0
