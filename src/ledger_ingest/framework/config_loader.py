"""
Configuration loading from YAML and environment overrides.

Reads:
1. Built-in defaults (DEFAULT_CONFIG below)
2. config/sources.yaml — fetch policy, cache backend, pipeline policy, per-source settings
3. Environment variables — runtime overrides for active sources and cache backend

Exposes a ConfigLoader interface for the ConnectorManager and ModuleRegistry.
"""

import copy
import logging
import os
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "fetch": {
        "max_retries": 3,
        "max_rate_limit_retries": 10,
        "initial_delay_seconds": 1.0,
        "max_delay_seconds": 8.0,
        "timeout_seconds": 30.0,
    },
    "cache": {
        "backend": "memory",
        "ttl_seconds": 1800,
        "max_entries": 50,
        "path": ".ledger_cache.json",
        "table": "ledger-ingest-cache",
        "region": "us-west-2",
    },
    "pipeline": {
        "on_source_failure": "fail",
        "detectors": ["MOD-001", "MOD-002"],
    },
    "sources": {
        "osmosis": {"enabled": True, "requests_per_second": 2},
        "xrpl": {"enabled": True, "requests_per_second": 10},
        "kaspa": {"enabled": True, "requests_per_second": 5},
        "dydx": {"enabled": True, "requests_per_second": 10},
    },
}

CACHE_BACKENDS = ("memory", "file", "dynamodb")
SOURCE_FAILURE_POLICIES = ("fail", "skip")


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base; override wins on scalar conflicts."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Configuration hierarchy (highest to lowest priority):
    1. Environment variables
       LEDGER_SOURCES        comma list restricting the active sources, e.g. "osmosis,xrpl"
       LEDGER_CACHE_BACKEND  memory | file | dynamodb
       LEDGER_CACHE_PATH     JSON file for the file backend
       AWS_REGION            region for the dynamodb backend
    2. YAML configuration (config/sources.yaml)
    3. Built-in defaults
    """

    DEFAULT_CONFIG_PATH = "config/sources.yaml"

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, environ: Optional[dict[str, str]] = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to sources.yaml (relative to the working directory)
            environ: Environment mapping (defaults to os.environ)
        """
        self.config_path = config_path
        self._environ = os.environ if environ is None else environ
        self._config: Optional[dict[str, Any]] = None

    def load(self) -> dict[str, Any]:
        """
        Load configuration from all sources. The result is memoized.

        Returns:
            Merged configuration dict

        Raises:
            ValueError: If the YAML document is not a mapping or names an unknown policy
        """
        if self._config is not None:
            return self._config

        file_config: dict[str, Any] = {}
        if os.path.exists(self.config_path):
            with open(self.config_path) as f:
                loaded = yaml.safe_load(f)
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ValueError(f"{self.config_path} must contain a mapping at the top level")
            file_config = loaded
            logger.info("ConfigLoader loaded %s", self.config_path)
        else:
            logger.info("ConfigLoader: %s not found — using built-in defaults", self.config_path)

        config = deep_merge(DEFAULT_CONFIG, file_config)
        self._apply_env_overrides(config)
        self._validate(config)
        self._config = config
        return config

    def get_fetch_config(self) -> dict[str, Any]:
        return dict(self.load()["fetch"])

    def get_cache_config(self) -> dict[str, Any]:
        return dict(self.load()["cache"])

    def get_pipeline_config(self) -> dict[str, Any]:
        return dict(self.load()["pipeline"])

    def get_active_modules(self) -> list[str]:
        """
        Get list of active detector module IDs.

        Returns:
            List of module IDs (e.g., ["MOD-001", "MOD-002"])
        """
        return list(self.load()["pipeline"].get("detectors") or [])

    def get_sources(self) -> list[str]:
        """
        Get the ids of enabled sources, in configuration order.

        Returns:
            List of source ids (e.g., ["osmosis", "xrpl", "kaspa", "dydx"])
        """
        sources = self.load()["sources"]
        return [source_id for source_id, settings in sources.items() if (settings or {}).get("enabled", True)]

    def get_source_config(self, source_id: str) -> dict[str, Any]:
        """
        Get configuration for a specific source.

        Returns:
            Source-specific config (e.g., {"requests_per_second": 2, "base_url": "..."})
        """
        return dict(self.load()["sources"].get(source_id) or {})

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _apply_env_overrides(self, config: dict[str, Any]) -> None:
        env = self._environ

        sources_override = env.get("LEDGER_SOURCES", "").strip()
        if sources_override:
            active = {s.strip().lower() for s in sources_override.split(",") if s.strip()}
            for source_id, settings in config["sources"].items():
                if settings is None:
                    settings = config["sources"][source_id] = {}
                settings["enabled"] = source_id in active
            for source_id in sorted(active - set(config["sources"])):
                config["sources"][source_id] = {"enabled": True}
            logger.info("ConfigLoader LEDGER_SOURCES override | sources=%s", sorted(active))

        backend = env.get("LEDGER_CACHE_BACKEND", "").strip().lower()
        if backend:
            config["cache"]["backend"] = backend
        path = env.get("LEDGER_CACHE_PATH", "").strip()
        if path:
            config["cache"]["path"] = path
        region = env.get("AWS_REGION", "").strip()
        if region:
            config["cache"]["region"] = region

    @staticmethod
    def _validate(config: dict[str, Any]) -> None:
        backend = config["cache"].get("backend")
        if backend not in CACHE_BACKENDS:
            raise ValueError(f"cache.backend must be one of {CACHE_BACKENDS}, got {backend!r}")
        policy = config["pipeline"].get("on_source_failure")
        if policy not in SOURCE_FAILURE_POLICIES:
            raise ValueError(
                f"pipeline.on_source_failure must be one of {SOURCE_FAILURE_POLICIES}, got {policy!r}"
            )
