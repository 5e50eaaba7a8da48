"""
Framework for source adapters, anomaly flagging and result caching.

ledger-ingest uses a plugin architecture where:
- BaseConnector: Standardizes source integration (blockchains, exchange indexers)
- BaseDetector: Standardizes flagging logic (missing prices, outliers, ...)
- ResultCache: TTL + LRU cache of finished batches over a key-value store
- ConfigLoader: Reads source configuration from YAML + environment
- ModuleRegistry: Dynamically loads active detectors
- PipelineRunner: Orchestrates cache → fetch → normalize → merge → flag → cache

Every cached batch is keyed by build_cache_key(source, subject, start, end),
so the same request always maps to the same cache slot.
"""

from .base_connector import BaseConnector, attribute_origins
from .base_detector import BaseDetector
from .config_loader import ConfigLoader
from .date_filter import TimeRange, filter_by_date_range
from .identity import build_cache_key
from .merge import merge
from .models import (
    CanonicalTransaction,
    ClassificationTag,
    DerivativesTransaction,
    PositionTag,
    TransactionKind,
    price_lookup_from_mapping,
)
from .module_registry import ModuleRegistry
from .pipeline_runner import PipelineResult, PipelineRunner
from .result_cache import ResultCache
from .summary import summarize

__all__ = [
    "BaseConnector",
    "BaseDetector",
    "CanonicalTransaction",
    "ClassificationTag",
    "ConfigLoader",
    "DerivativesTransaction",
    "ModuleRegistry",
    "PipelineResult",
    "PipelineRunner",
    "PositionTag",
    "ResultCache",
    "TimeRange",
    "TransactionKind",
    "attribute_origins",
    "build_cache_key",
    "filter_by_date_range",
    "merge",
    "price_lookup_from_mapping",
    "summarize",
]
