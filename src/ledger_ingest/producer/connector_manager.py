"""
ConnectorManager — reads sources.yaml, instantiates connectors, runs requests.

This is the core orchestrator for the ledger-ingest CLI:
1. Loads config/sources.yaml to determine enabled sources + fetch/cache policy
2. Builds one shared ResilientFetcher (retry policy + aiohttp transport)
3. Instantiates a BaseConnector subclass for each enabled source
4. Builds the result cache and the active detectors (via ModuleRegistry)
5. Hands everything to a PipelineRunner and serves run() requests

Connectors share the fetcher (one HTTP session) but each owns its rate limiter.
"""

import logging
from typing import Any, Optional, Sequence

from ..framework.base_connector import BaseConnector
from ..framework.config_loader import ConfigLoader
from ..framework.date_filter import TimeRange
from ..framework.models import PriceLookup
from ..framework.module_registry import ModuleRegistry
from ..framework.pipeline_runner import PipelineResult, PipelineRunner
from ..framework.result_cache import ResultCache
from ..framework.stores import DynamoDBStore, InMemoryStore, JsonFileStore, KeyValueStore
from ..connectors.dydx_connector import DydxConnector
from ..connectors.kaspa_connector import KaspaConnector
from ..connectors.osmosis_connector import OsmosisConnector
from ..connectors.xrpl_connector import XrplConnector
from ..transport.fetch_with_retry import AiohttpTransport, CancellationToken, ResilientFetcher, RetryPolicy

logger = logging.getLogger(__name__)

# Registry maps config source ids → connector class
_CONNECTOR_REGISTRY: dict[str, type[BaseConnector]] = {
    "osmosis": OsmosisConnector,
    "xrpl": XrplConnector,
    "kaspa": KaspaConnector,
    "dydx": DydxConnector,
}


class ConnectorManager:
    """
    Wires configuration into a ready-to-run PipelineRunner.

    Usage:
        manager = ConnectorManager()
        result = await manager.run(["osmosis"], "osmo1...", TimeRange("2024-01-01"))
        await manager.close()
    """

    DEFAULT_CONFIG_PATH = ConfigLoader.DEFAULT_CONFIG_PATH

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        config_loader: Optional[ConfigLoader] = None,
        use_cache: bool = True,
    ) -> None:
        self.config_loader = config_loader or ConfigLoader(config_path)
        self.use_cache = use_cache
        self._fetcher: Optional[ResilientFetcher] = None
        self._runner: Optional[PipelineRunner] = None

    def build_fetcher(self) -> ResilientFetcher:
        """
        Build the shared fetcher from the fetch section of the config.

        Returns:
            ResilientFetcher with the configured retry budgets and request timeout.
        """
        fetch = self.config_loader.get_fetch_config()
        policy = RetryPolicy(
            max_retries=int(fetch["max_retries"]),
            max_rate_limit_retries=int(fetch["max_rate_limit_retries"]),
            initial_delay=float(fetch["initial_delay_seconds"]),
            max_delay=float(fetch["max_delay_seconds"]),
        )
        transport = AiohttpTransport(timeout_seconds=float(fetch["timeout_seconds"]))
        return ResilientFetcher(policy=policy, transport=transport)

    def build_connectors(self, fetcher: ResilientFetcher) -> dict[str, BaseConnector]:
        """
        Instantiate connectors for every enabled source in config.

        Unknown source ids are logged as warnings and skipped. Per-source settings
        (requests_per_second, base_url, max_pages, ...) are passed to each connector.

        Args:
            fetcher: Shared ResilientFetcher.

        Returns:
            Dict mapping source id to connector instance.
        """
        connectors: dict[str, BaseConnector] = {}
        for source_id in self.config_loader.get_sources():
            connector_cls = _CONNECTOR_REGISTRY.get(source_id)
            if connector_cls is None:
                logger.warning("Unknown source '%s' in sources — skipping", source_id)
                continue
            connectors[source_id] = connector_cls(fetcher, self.config_loader.get_source_config(source_id))
            logger.info("Registered connector: %s (%s)", source_id, connector_cls.__name__)
        return connectors

    def build_store(self, cache_config: dict[str, Any]) -> KeyValueStore:
        backend = cache_config["backend"]
        if backend == "file":
            return JsonFileStore(cache_config["path"])
        if backend == "dynamodb":
            return DynamoDBStore(cache_config["table"], cache_config["region"])
        return InMemoryStore()

    def build_cache(self) -> Optional[ResultCache]:
        if not self.use_cache:
            logger.info("ConnectorManager result cache disabled")
            return None
        cache_config = self.config_loader.get_cache_config()
        return ResultCache(
            self.build_store(cache_config),
            ttl=float(cache_config["ttl_seconds"]),
            max_entries=int(cache_config["max_entries"]),
        )

    def build_runner(self) -> PipelineRunner:
        """Build (once) the fetcher, connectors, cache and detectors."""
        if self._runner is not None:
            return self._runner

        self._fetcher = self.build_fetcher()
        connectors = self.build_connectors(self._fetcher)
        detectors = list(ModuleRegistry(self.config_loader).load_active_modules().values())
        pipeline = self.config_loader.get_pipeline_config()

        self._runner = PipelineRunner(
            connectors,
            detectors=detectors,
            cache=self.build_cache(),
            on_source_failure=pipeline["on_source_failure"],
        )
        logger.info(
            "ConnectorManager ready | sources=%s | detectors=%d | on_source_failure=%s",
            sorted(connectors),
            len(detectors),
            pipeline["on_source_failure"],
        )
        return self._runner

    async def run(
        self,
        source_ids: Sequence[str],
        subject_id: str,
        time_range: Optional[TimeRange] = None,
        price_lookup: Optional[PriceLookup] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        return await self.build_runner().run(source_ids, subject_id, time_range, price_lookup, cancel_token)

    async def close(self) -> None:
        """Release the shared HTTP session."""
        if self._fetcher is not None:
            await self._fetcher.close()
            logger.info("ConnectorManager closed")
