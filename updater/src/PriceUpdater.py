"""PriceUpdater: Main orchestrator for one worker process.

Architecture:
    - One HermesClient shared by every chain, using this worker's endpoint
      ranking
    - Per chain: a ChainClient, FeeEstimator, ConfirmationTracker, on-chain
      value cache and SubmissionCoordinator
    - One polling task per batch; batches are independent, so a slow or
      failing batch never holds up another
    - One uptime task per chain that has a webhook configured
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .ChainClient import ChainClient
from .ConfirmationTracker import ConfirmationTracker
from .EndpointSelector import EndpointSelector
from .FeeEstimator import FeeEstimator
from .HermesClient import HermesClient
from .onchain_cache import OnChainValueCache
from .SubmissionCoordinator import SubmissionCoordinator
from .UpdaterConfig import BatchConfig, ChainConfig, UpdaterConfig
from .UptimePinger import UptimePinger

logger = logging.getLogger(__name__)


class PriceUpdater:
    """Runs every configured batch of the selected chains for one worker.

    :ivar config: Configuration resolved for this worker.
    :ivar coordinators: Submission coordinators keyed by chain name.
    """

    def __init__(
        self,
        config: UpdaterConfig,
        private_key: str | None = None,
        chains: Sequence[str] | None = None,
        endpoint_deadline: float = 2.0,
    ) -> None:
        """Initialize the updater.

        :param config: Configuration resolved for this worker.
        :param private_key: Hex key used to sign submissions.
        :param chains: Optional subset of chain names to run (default: all).
        :param endpoint_deadline: Per-endpoint price fetch deadline in seconds.
        :raises ValueError: If an unknown chain is selected.
        """
        self.config = config
        self.worker = config.worker

        selected = list(chains) if chains else list(config.chains)
        unknown = [c for c in selected if c not in config.chains]
        if unknown:
            raise ValueError(f"Unknown chains: {unknown}. Available: {list(config.chains)}")
        self.chains: list[ChainConfig] = [config.chains[c] for c in selected]

        self.prices = HermesClient(
            EndpointSelector(config.endpoints, deadline=endpoint_deadline),
            cache_seconds=config.http_cache_seconds,
            timeout=endpoint_deadline,
        )

        self.coordinators: dict[str, SubmissionCoordinator] = {}
        for chain in self.chains:
            self.coordinators[chain.name] = self._create_coordinator(chain, private_key)

        logger.info(
            f"PriceUpdater initialized: {self.worker}, chains={selected}, "
            f"endpoints={[e.name for e in config.endpoints]}, "
            f"onchain_cache_ttl={config.onchain_cache_ttl_seconds}s"
        )

    def _create_coordinator(self, chain: ChainConfig, private_key: str | None) -> SubmissionCoordinator:
        """Wire the per-chain components together.

        :param chain: Chain to build a coordinator for.
        :param private_key: Signing key.
        :returns: Configured coordinator.
        """
        tx = chain.tx_config
        client = ChainClient(chain, private_key=private_key)
        return SubmissionCoordinator(
            chain=chain,
            worker=self.worker,
            prices=self.prices,
            chain_client=client,
            fee_estimator=FeeEstimator(tx, client),
            tracker=ConfirmationTracker(
                client,
                polling_interval_ms=tx.confirmation_polling_interval_ms,
                timeout_ms=tx.confirmation_timeout_ms,
                required_confirmations=tx.required_confirmations,
            ),
            cache=OnChainValueCache(self.config.onchain_cache_ttl_seconds),
        )

    async def _batch_loop(self, chain: ChainConfig, batch: BatchConfig) -> None:
        """Poll one batch forever.

        :param chain: Chain the batch lives on.
        :param batch: Batch to poll.
        """
        coordinator = self.coordinators[chain.name]
        interval = batch.polling_interval_ms / 1000
        logger.info(
            f"[{chain.name}/{batch.batch_id}] Polling {len(batch.feeds)} feeds every "
            f"{interval:g}s, write delay {batch.write_delay_ms}ms"
        )

        while True:
            try:
                await coordinator.process(batch)
            except Exception:
                logger.exception(f"[{chain.name}/{batch.batch_id}] Unexpected error in poll cycle")
            await asyncio.sleep(interval)

    async def run(self) -> None:
        """Run all batch loops and uptime pings until cancelled."""
        tasks: list[asyncio.Task] = []
        for chain in self.chains:
            for batch in chain.batches:
                tasks.append(
                    asyncio.create_task(
                        self._batch_loop(chain, batch), name=f"{chain.name}/{batch.batch_id}"
                    )
                )
            if chain.uptime_webhook_url:
                pinger = UptimePinger(chain.uptime_webhook_url, chain.uptime_interval_seconds)
                tasks.append(asyncio.create_task(pinger.run(), name=f"{chain.name}/uptime"))

        logger.info(f"Started {len(tasks)} tasks")
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            # Clean up shared HTTP client
            await HermesClient.close_shared_client()
