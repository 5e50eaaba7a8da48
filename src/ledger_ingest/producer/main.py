"""
ledger-ingest — command-line entry point.

Fetches activity for one subject from one or more sources, normalizes, merges,
flags and caches it, then prints the batch as JSON or CSV on stdout.

    ledger-ingest --source osmosis --subject osmo1... --start 2024-01-01 --end 2024-12-31
    python -m ledger_ingest --source dydx --subject dydx1... --format csv

Environment variables:
    LEDGER_SOURCES        Restrict the enabled sources, e.g. "osmosis,xrpl"
    LEDGER_CACHE_BACKEND  memory | file | dynamodb
    LEDGER_CACHE_PATH     JSON file for the file backend
    AWS_REGION            Region for the dynamodb backend

Shutdown:
    SIGTERM / SIGINT  → cancels in-flight requests and backoff waits; nothing is cached
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Optional, Sequence

from ..exceptions import Cancelled, LedgerIngestError
from ..framework.date_filter import TimeRange
from ..framework.models import PriceLookup, price_lookup_from_mapping
from ..framework.pipeline_runner import PipelineResult
from ..transport.fetch_with_retry import CancellationToken
from .connector_manager import ConnectorManager
from .export_writer import ExportWriter

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-ingest",
        description="Fetch, normalize, merge and flag ledger activity for one subject.",
    )
    parser.add_argument(
        "--source",
        dest="sources",
        action="append",
        help="Source id to query (repeatable). Defaults to every enabled source.",
    )
    parser.add_argument("--subject", required=True, help="Address or account id to query")
    parser.add_argument("--start", help="First day to include, YYYY-MM-DD (UTC)")
    parser.add_argument("--end", help="Last day to include, YYYY-MM-DD (UTC)")
    parser.add_argument("--format", choices=("json", "csv"), default="json", help="Output format")
    parser.add_argument("--prices", help="JSON file mapping YYYY-MM-DD to a fiat unit price")
    parser.add_argument("--config", default=ConnectorManager.DEFAULT_CONFIG_PATH, help="Path to sources.yaml")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the result cache")
    return parser


def load_prices(path: Optional[str]) -> Optional[PriceLookup]:
    """
    Load a {"YYYY-MM-DD": price} JSON file into a PriceLookup.

    Raises:
        ValueError: If the file does not hold a JSON object
    """
    if not path:
        return None
    with open(path) as f:
        prices = json.load(f)
    if not isinstance(prices, dict):
        raise ValueError(f"{path} must contain a JSON object of date → price")
    logger.info("Loaded %d daily prices from %s", len(prices), path)
    return price_lookup_from_mapping(prices)


def render_json(result: PipelineResult) -> str:
    document: dict[str, Any] = {
        "cache_key": result.cache_key,
        "from_cache": result.from_cache,
        "failed_sources": result.failed_sources,
        "summary": result.summary,
        "transactions": [tx.to_dict() for tx in result.transactions],
    }
    return json.dumps(document, indent=2)


async def _run(args: argparse.Namespace, manager: ConnectorManager, token: CancellationToken) -> PipelineResult:
    sources = args.sources or manager.config_loader.get_sources()
    try:
        return await manager.run(
            sources,
            args.subject,
            TimeRange(args.start, args.end),
            load_prices(args.prices),
            token,
        )
    finally:
        await manager.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run one request and print the result. Returns the process exit code."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    args = build_parser().parse_args(argv)
    try:
        TimeRange(args.start, args.end)
    except ValueError as exc:
        logger.error("Invalid date range: %s", exc)
        return EXIT_USAGE

    manager = ConnectorManager(config_path=args.config, use_cache=not args.no_cache)
    token = CancellationToken()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _handle_signal(sig: signal.Signals) -> None:
        logger.info("Received %s — cancelling in-flight requests", sig.name)
        token.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        logger.info("ledger-ingest starting | subject=%s", args.subject)
        result = loop.run_until_complete(_run(args, manager, token))
    except Cancelled:
        logger.warning("ledger-ingest cancelled")
        return EXIT_CANCELLED
    except (LedgerIngestError, OSError, ValueError) as exc:
        logger.error("ledger-ingest failed: %s", exc)
        return EXIT_FAILED
    finally:
        loop.close()

    if args.format == "csv":
        ExportWriter().write(result.transactions, sys.stdout)
    else:
        sys.stdout.write(render_json(result) + "\n")

    if not result.complete:
        logger.warning("ledger-ingest partial result | failed_sources=%s", sorted(result.failed_sources))
    logger.info("ledger-ingest finished | transactions=%d | from_cache=%s", len(result.transactions), result.from_cache)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
