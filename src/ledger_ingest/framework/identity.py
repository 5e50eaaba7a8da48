"""
Deterministic identifiers used across the pipeline.

- Cache keys: one per request identity (source, subject, date range)
- Entry ids: one per canonical entry, derived from the native origin hash

Same inputs always produce the same identifier, so a re-fetch of the same
request overwrites the same cache entry and re-normalizing the same events
yields the same entry ids.
"""

from typing import Optional


def normalize_component(value: Optional[str]) -> str:
    """Trim whitespace and lower-case; None becomes the empty string."""
    if value is None:
        return ""
    return value.strip().lower()


def build_cache_key(
    source_id: str,
    subject_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> str:
    """
    Build the result-cache key for one request.

    Format: {source}:{subject}:{startDate}:{endDate}, every component normalized,
    absent bounds rendered as empty strings.

    Examples:
        build_cache_key("Osmosis", " osmo1abc ", "2024-01-01")  → "osmosis:osmo1abc:2024-01-01:"
        build_cache_key("kaspa", "kaspa:qr...")                 → "kaspa:kaspa:qr...::"
    """
    return ":".join(
        [
            normalize_component(source_id),
            normalize_component(subject_id),
            normalize_component(start_date),
            normalize_component(end_date),
        ]
    )


def origin_entry_id(origin_hash: str, index: int) -> str:
    """Id of the index-th entry (emission order) expanded from one native transaction."""
    return f"{origin_hash}-{index}"
