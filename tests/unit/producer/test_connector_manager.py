"""
Unit tests for ConnectorManager.

Tests cover:
- build_connectors() instantiates the right connector type per source id
- build_connectors() skips unknown source ids with a warning
- build_connectors() passes per-source settings and skips disabled sources
- build_fetcher() reads retry budgets and timeout from the fetch section
- build_store() / build_cache() select the configured backend, or no cache
- build_runner() is built once with detectors and the failure policy
- run() delegates to the runner, close() releases the shared fetcher
"""

import asyncio
import logging
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from ledger_ingest.connectors.dydx_connector import DydxConnector
from ledger_ingest.connectors.kaspa_connector import KaspaConnector
from ledger_ingest.connectors.osmosis_connector import OsmosisConnector
from ledger_ingest.connectors.xrpl_connector import XrplConnector
from ledger_ingest.framework.config_loader import ConfigLoader
from ledger_ingest.framework.date_filter import TimeRange
from ledger_ingest.framework.result_cache import ResultCache
from ledger_ingest.framework.stores import DynamoDBStore, InMemoryStore, JsonFileStore
from ledger_ingest.producer.connector_manager import ConnectorManager

SAMPLE_YAML = """
fetch:
  max_retries: 2
  max_rate_limit_retries: 4
  initial_delay_seconds: 0.5
  max_delay_seconds: 4.0
  timeout_seconds: 12
cache:
  backend: memory
  ttl_seconds: 60
  max_entries: 5
pipeline:
  on_source_failure: skip
sources:
  osmosis:
    requests_per_second: 2
    base_url: https://lcd.example.org/
    max_pages: 3
  xrpl:
    enabled: false
  kaspa: {}
  dydx: {}
"""


def _manager(tmp_path: Path, body: str = SAMPLE_YAML, **kwargs) -> ConnectorManager:
    config_path = tmp_path / "sources.yaml"
    config_path.write_text(textwrap.dedent(body))
    loader = ConfigLoader(str(config_path), environ={})
    return ConnectorManager(config_loader=loader, **kwargs)


class TestBuildConnectors:
    def test_enabled_sources_get_their_connector_type(self, tmp_path: Path) -> None:
        connectors = _manager(tmp_path).build_connectors(MagicMock())
        assert list(connectors) == ["osmosis", "kaspa", "dydx"]
        assert isinstance(connectors["osmosis"], OsmosisConnector)
        assert isinstance(connectors["kaspa"], KaspaConnector)
        assert isinstance(connectors["dydx"], DydxConnector)

    def test_all_default_sources_known(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path, body="sources: {}\n")
        connectors = manager.build_connectors(MagicMock())
        assert {type(c) for c in connectors.values()} == {
            OsmosisConnector, XrplConnector, KaspaConnector, DydxConnector,
        }

    def test_unknown_source_skipped_with_warning(self, tmp_path: Path, caplog) -> None:
        manager = _manager(tmp_path, body="sources:\n  solana:\n    enabled: true\n")
        with caplog.at_level(logging.WARNING):
            connectors = manager.build_connectors(MagicMock())
        assert "solana" not in connectors
        assert "Unknown source 'solana'" in caplog.text

    def test_source_settings_passed_through(self, tmp_path: Path) -> None:
        fetcher = MagicMock()
        osmosis = _manager(tmp_path).build_connectors(fetcher)["osmosis"]
        assert osmosis.base_url == "https://lcd.example.org"
        assert osmosis.max_pages == 3
        assert osmosis.fetcher is fetcher


class TestBuildFetcher:
    def test_policy_from_fetch_section(self, tmp_path: Path) -> None:
        fetcher = _manager(tmp_path).build_fetcher()
        assert fetcher.policy.max_retries == 2
        assert fetcher.policy.max_rate_limit_retries == 4
        assert fetcher.policy.initial_delay == 0.5
        assert fetcher.policy.max_delay == 4.0


class TestBuildStoreAndCache:
    def setup_method(self) -> None:
        self.manager = ConnectorManager(config_loader=MagicMock())

    def test_memory_backend(self) -> None:
        assert isinstance(self.manager.build_store({"backend": "memory"}), InMemoryStore)

    def test_file_backend(self, tmp_path: Path) -> None:
        path = str(tmp_path / "cache.json")
        store = self.manager.build_store({"backend": "file", "path": path})
        assert isinstance(store, JsonFileStore)
        assert store.path == path

    def test_dynamodb_backend(self) -> None:
        with patch("ledger_ingest.framework.stores.boto3.client") as mock_client:
            store = self.manager.build_store({"backend": "dynamodb", "table": "t", "region": "eu-west-1"})
        assert isinstance(store, DynamoDBStore)
        mock_client.assert_called_once_with("dynamodb", region_name="eu-west-1")

    def test_cache_limits_from_config(self, tmp_path: Path) -> None:
        cache = _manager(tmp_path).build_cache()
        assert isinstance(cache, ResultCache)
        assert cache.ttl == 60.0
        assert cache.max_entries == 5

    def test_cache_disabled(self, tmp_path: Path) -> None:
        assert _manager(tmp_path, use_cache=False).build_cache() is None


class TestBuildRunner:
    def test_runner_wired_and_memoized(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path)
        runner = manager.build_runner()
        assert manager.build_runner() is runner
        assert sorted(runner.connectors) == ["dydx", "kaspa", "osmosis"]
        assert len(runner.detectors) == 2
        assert runner.on_source_failure == "skip"
        assert isinstance(runner.cache, ResultCache)

    def test_run_delegates_to_runner(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path)
        manager._runner = MagicMock()
        manager._runner.run = AsyncMock(return_value="result")
        time_range = TimeRange("2024-01-01")

        result = asyncio.run(manager.run(["osmosis"], "osmo1abc", time_range))

        assert result == "result"
        manager._runner.run.assert_awaited_once_with(["osmosis"], "osmo1abc", time_range, None, None)


class TestClose:
    def test_close_releases_fetcher(self, tmp_path: Path) -> None:
        manager = _manager(tmp_path)
        manager.build_runner()
        manager._fetcher.close = AsyncMock()
        asyncio.run(manager.close())
        manager._fetcher.close.assert_awaited_once()

    def test_close_before_build_is_noop(self, tmp_path: Path) -> None:
        asyncio.run(_manager(tmp_path).close())
