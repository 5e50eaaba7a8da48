"""
Merge & deduplication of per-source batches.

merge() is the only place batches from different adapters meet. It guarantees:
- no two output entries share an id (first seen wins, content is not compared)
- output is non-decreasing by timestamp
- entries with equal timestamps keep their input order (stable sort)
"""

from typing import Iterable, TypeVar

from .models import LedgerRecord

R = TypeVar("R", bound=LedgerRecord)


def merge(*batches: Iterable[R]) -> list[R]:
    """
    Concatenate batches, drop repeated ids, and sort ascending by timestamp.

    Args:
        *batches: Zero or more batches in caller order (earlier batches win ties on id).

    Returns:
        New list; the input batches are not modified.
    """
    seen: set[str] = set()
    unique: list[R] = []
    for batch in batches:
        for entry in batch:
            if entry.id in seen:
                continue
            seen.add(entry.id)
            unique.append(entry)

    # list.sort is stable, so equal timestamps keep concatenation order
    unique.sort(key=lambda entry: entry.timestamp)
    return unique

