#!/usr/bin/env python3
"""Redundant Pyth Price Updater.

Fetches signed Pyth prices from ranked Hermes endpoints and pushes them
on-chain whenever a feed's heartbeat expires or its price deviates past the
configured threshold. Several workers run side by side; each one's index
sets its polling cadence, write delay and gas price multiplier.

See config/ for example configuration documents.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.errors import ConfigInvalid
from .src.log_sinks import attach_sinks
from .src.PriceUpdater import PriceUpdater
from .src.UpdaterConfig import load_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_chains(chains_str: str | None) -> list[str]:
    """Parse a comma-separated chain list.

    :param chains_str: e.g. "gravity,arbitrum-one".
    :returns: Chain names, empty for all chains.
    """
    if not chains_str:
        return []
    return [c.strip() for c in chains_str.split(",") if c.strip()]


def main() -> None:
    """Main entry point for the price updater CLI."""
    parser = argparse.ArgumentParser(
        description="Redundant Pyth price updater worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Primary worker
  python -m updater.main --config config/gravity.json --worker-index 1

  # Backup worker, only on one chain
  python -m updater.main --config config/gravity.json --worker-index 2 --chains gravity

Environment variables (CLI args take precedence):
  UPDATER_CONFIG, UPDATER_WORKER_INDEX, UPDATER_CHAINS, UPDATER_PRIVATE_KEY,
  ENDPOINT_DEADLINE, RPC_URL_<CHAIN>, plus any $ENV{...} used in the config.
""",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to the JSON configuration document",
        default=os.environ.get("UPDATER_CONFIG"),
    )

    parser.add_argument(
        "--worker-index",
        dest="worker_index",
        type=int,
        help="1-based index of this worker (default: 1)",
        default=int(os.environ.get("UPDATER_WORKER_INDEX") or "1"),
    )

    parser.add_argument(
        "--chains",
        type=str,
        help="Comma-separated chains to run (default: all in the config)",
        default=os.environ.get("UPDATER_CHAINS"),
    )

    parser.add_argument(
        "--endpoint-deadline",
        dest="endpoint_deadline",
        type=float,
        help="Seconds allowed per price endpoint attempt (default: 2.0)",
        default=float(os.environ.get("ENDPOINT_DEADLINE") or "2.0"),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if not args.config:
        parser.error("--config (or UPDATER_CONFIG) is required")

    if args.worker_index < 1:
        parser.error("--worker-index must be at least 1")

    if args.endpoint_deadline <= 0:
        parser.error("--endpoint-deadline must be positive")

    try:
        config = load_config(args.config, args.worker_index)
    except ConfigInvalid as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    chains = parse_chains(args.chains)
    private_key = os.environ.get("UPDATER_PRIVATE_KEY")
    if not private_key:
        logger.warning("UPDATER_PRIVATE_KEY not set, submissions will fail")

    listener = attach_sinks(config.log_sinks)

    # Log configuration
    logger.info("=" * 60)
    logger.info("Redundant Pyth Price Updater")
    logger.info("=" * 60)
    logger.info(f"Worker:            {config.worker.index}{' (primary)' if config.worker.is_primary else ''}")
    logger.info(f"Config:            {args.config}")
    logger.info(f"Chains:            {', '.join(chains or config.chains)}")
    logger.info(f"Endpoints:         {', '.join(e.name for e in config.endpoints)}")
    logger.info(f"Endpoint Deadline: {args.endpoint_deadline}s")
    logger.info(f"On-chain Cache:    {config.onchain_cache_ttl_seconds}s")
    for chain in config.chains.values():
        if chains and chain.name not in chains:
            continue
        tx = chain.tx_config
        logger.info(
            f"{chain.name}: {len(chain.batches)} batches, "
            f"gas multiplier {tx.gas_price_multiplier}, "
            f"{tx.required_confirmations} confirmations within {tx.confirmation_timeout_ms}ms"
        )
    logger.info("=" * 60)

    try:
        updater = PriceUpdater(
            config,
            private_key=private_key,
            chains=chains,
            endpoint_deadline=args.endpoint_deadline,
        )
        asyncio.run(updater.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if listener is not None:
            listener.stop()


if __name__ == "__main__":
    main()
