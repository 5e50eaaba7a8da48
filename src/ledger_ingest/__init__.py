"""
ledger-ingest: multi-source ledger ingestion and normalization.

Source adapters turn each upstream's native activity into canonical records,
which are merged, flagged for review and cached per request.
"""

__version__ = "0.1.0"
