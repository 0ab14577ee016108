"""SubmissionCoordinator: Staggered, escalating submission of stale batches.

Several worker processes run this same loop against the same batches with no
shared lock. They stay out of each other's way through on-chain state and a
static write delay that grows with worker index:

    - Worker 1 (delay 0) submits as soon as a batch is due.
    - Worker N waits its delay from the moment it first saw the batch due,
      re-reading the chain every polling interval. If the batch stops being
      due, someone else's update landed and the attempt is dropped without
      sending anything.
    - If the batch is still due when the delay runs out, the worker submits
      with its own, larger gas price multiplier.

This gives eventual, not exclusive, consistency: two workers can both land
an update in the same window. That costs gas but never corrupts state.

State machine per batch::

    IDLE -> OBSERVED -> WAITING -> SUBMITTING -> AWAITING_CONFIRMATION
         -> CONFIRMED | TIMED_OUT | SUPERSEDED

SUPERSEDED is reachable from OBSERVED, WAITING and AWAITING_CONFIRMATION.
Every terminal state, and every error, returns the batch to IDLE for the
next poll.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Mapping

from .BatchPlanner import BatchCandidate, plan_batch
from .ConfirmationTracker import ConfirmationOutcome
from .errors import EndpointFailure, RpcFailure, SubmissionRejected
from .onchain_cache import OnChainValueCache
from .StalenessEvaluator import StalenessEvaluator
from .UpdaterConfig import FixedUpdateFee

if TYPE_CHECKING:
    from .ChainClient import ChainClient
    from .ConfirmationTracker import ConfirmationTracker
    from .FeeEstimator import FeeEstimator, FeePlan
    from .HermesClient import HermesClient, PriceAttestation
    from .StalenessEvaluator import OnChainValue
    from .UpdaterConfig import BatchConfig, ChainConfig, WorkerIdentity

logger = logging.getLogger(__name__)


class UpdateState(str, Enum):
    IDLE = "idle"
    OBSERVED = "observed"
    WAITING = "waiting"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    SUPERSEDED = "superseded"


TERMINAL_STATES = frozenset(
    {UpdateState.CONFIRMED, UpdateState.TIMED_OUT, UpdateState.SUPERSEDED}
)


@dataclass
class PendingUpdate:
    """An in-flight submission attempt for one batch.

    :ivar batch_id: Batch being updated.
    :ivar proposed_values: Attestations that will be (or were) submitted.
    :ivar observed_at: Monotonic time the batch was first seen due.
    :ivar fee_plan: Fee plan used for the transaction.
    :ivar submitted_at: Monotonic time the transaction was sent.
    :ivar tx_hash: Hash of the sent transaction.
    :ivar confirmations: Last observed confirmation depth.
    """

    batch_id: str
    proposed_values: dict[str, PriceAttestation]
    observed_at: float
    fee_plan: FeePlan | None = None
    submitted_at: float | None = None
    tx_hash: str | None = None
    confirmations: int = 0


@dataclass
class BatchStatus:
    """Observable per-batch status on this worker."""

    state: UpdateState = UpdateState.IDLE
    last_outcome: UpdateState | None = None
    submissions: int = 0
    history: list[UpdateState] = field(default_factory=list)


class SubmissionCoordinator:
    """Drives batches of one chain through the submission state machine.

    :ivar chain: Chain configuration.
    :ivar worker: Identity of this worker.
    :ivar pending: In-flight updates keyed by batch id.
    """

    def __init__(
        self,
        chain: ChainConfig,
        worker: WorkerIdentity,
        prices: HermesClient,
        chain_client: ChainClient,
        fee_estimator: FeeEstimator,
        tracker: ConfirmationTracker,
        cache: OnChainValueCache | None = None,
        evaluator: StalenessEvaluator | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the coordinator.

        :param chain: Chain configuration resolved for this worker.
        :param worker: Worker identity.
        :param prices: Price attestation client.
        :param chain_client: RPC client for the chain.
        :param fee_estimator: Fee estimator for the chain.
        :param tracker: Confirmation tracker for the chain.
        :param cache: On-chain value cache (default: disabled).
        :param evaluator: Staleness evaluator.
        :param clock: Monotonic clock used for write delays.
        :param wall_clock: Unix clock used for staleness ages.
        :param sleep: Async sleep function.
        """
        self.chain = chain
        self.worker = worker
        self.prices = prices
        self.chain_client = chain_client
        self.fee_estimator = fee_estimator
        self.tracker = tracker
        self.cache = cache or OnChainValueCache(0)
        self.evaluator = evaluator or StalenessEvaluator()
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

        self.pending: dict[str, PendingUpdate] = {}
        self.status: dict[str, BatchStatus] = {}

    def status_of(self, batch_id: str) -> BatchStatus:
        return self.status.setdefault(batch_id, BatchStatus())

    def _transition(self, batch: BatchConfig, state: UpdateState, message: str = "",
                    **fields: object) -> None:
        status = self.status_of(batch.batch_id)
        status.state = state
        status.history.append(state)
        if state in TERMINAL_STATES:
            status.last_outcome = state

        level = logging.INFO if state in TERMINAL_STATES else logging.DEBUG
        logger.log(
            level,
            f"[{self.chain.name}/{batch.batch_id}] {self.worker} -> {state.value}"
            + (f": {message}" if message else ""),
            extra={
                "fields": {
                    "chain": self.chain.name,
                    "batch_id": batch.batch_id,
                    "customer_id": batch.customer_id,
                    "worker": self.worker.index,
                    "state": state.value,
                    **fields,
                }
            },
        )

    def _cache_keys(self, batch: BatchConfig) -> list[tuple[str, str]]:
        return [(self.chain.pyth_address, f.address) for f in batch.feeds]

    async def read_on_chain(
        self, batch: BatchConfig, *, use_cache: bool = True
    ) -> dict[str, OnChainValue | None]:
        """Read the on-chain value of every member feed.

        :param batch: Batch to read.
        :param use_cache: Allow cached values within their TTL.
        :returns: Values keyed by feed id.
        :raises RpcFailure: If a read fails.
        """
        values: dict[str, OnChainValue | None] = {}
        for feed in batch.feeds:
            if use_cache:
                hit, cached = self.cache.get(self.chain.pyth_address, feed.address)
                if hit:
                    values[feed.address] = cached
                    continue
            value = await self.chain_client.read_on_chain_value(feed.address)
            self.cache.set(self.chain.pyth_address, feed.address, value)
            values[feed.address] = value
        return values

    async def _plan(
        self,
        batch: BatchConfig,
        attestations: Mapping[str, PriceAttestation],
        *,
        use_cache: bool,
    ) -> BatchCandidate | None:
        on_chain = await self.read_on_chain(batch, use_cache=use_cache)
        results = self.evaluator.evaluate_all(
            batch.feeds, on_chain, attestations, self._wall_clock()
        )
        return plan_batch(batch, results, attestations)

    async def evaluate(self, batch: BatchConfig, *, use_cache: bool = True) -> BatchCandidate | None:
        """Fetch fresh prices and decide whether the batch is due.

        :param batch: Batch to evaluate.
        :param use_cache: Allow cached on-chain values.
        :returns: Candidate submission, or None if nothing is due.
        :raises EndpointFailure: If no price endpoint answered.
        :raises RpcFailure: If an on-chain read failed.
        """
        attestations = await self.prices.fetch([f.address for f in batch.feeds])
        return await self._plan(batch, attestations, use_cache=use_cache)

    async def process(self, batch: BatchConfig) -> UpdateState:
        """Run one poll cycle for a batch.

        Never raises for steady-state failures; they are logged and the
        batch returns to IDLE.

        :param batch: Batch to process.
        :returns: Terminal state reached, or IDLE if nothing was due or the
            cycle failed.
        """
        if batch.batch_id in self.pending:
            logger.debug(f"[{self.chain.name}/{batch.batch_id}] Already in flight, ignoring")
            return self.status_of(batch.batch_id).state

        try:
            candidate = await self.evaluate(batch)
        except EndpointFailure as e:
            logger.warning(f"[{self.chain.name}/{batch.batch_id}] Skipping cycle: {e}")
            return UpdateState.IDLE
        except RpcFailure as e:
            logger.warning(f"[{self.chain.name}/{batch.batch_id}] On-chain read failed: {e}")
            return UpdateState.IDLE

        if candidate is None:
            return UpdateState.IDLE

        pending = PendingUpdate(
            batch_id=batch.batch_id,
            proposed_values=dict(candidate.values),
            observed_at=self._clock(),
        )
        self.pending[batch.batch_id] = pending
        try:
            return await self._drive(batch, candidate, pending)
        except SubmissionRejected as e:
            logger.warning(f"[{self.chain.name}/{batch.batch_id}] {e}")
            self._transition(batch, UpdateState.TIMED_OUT, "submission rejected")
            return UpdateState.TIMED_OUT
        except (EndpointFailure, RpcFailure) as e:
            logger.warning(f"[{self.chain.name}/{batch.batch_id}] Update aborted: {e}")
            return UpdateState.IDLE
        finally:
            del self.pending[batch.batch_id]
            self.status_of(batch.batch_id).state = UpdateState.IDLE

    async def _drive(
        self, batch: BatchConfig, candidate: BatchCandidate, pending: PendingUpdate
    ) -> UpdateState:
        self._transition(batch, UpdateState.OBSERVED, candidate.describe())

        if batch.write_delay_ms > 0:
            deadline = pending.observed_at + batch.write_delay_ms / 1000
            self._transition(
                batch, UpdateState.WAITING, f"write delay {batch.write_delay_ms}ms"
            )
            waited = await self._wait(batch, candidate, deadline)
            if waited is None:
                self.cache.invalidate(self._cache_keys(batch))
                self._transition(batch, UpdateState.SUPERSEDED, "updated by another worker")
                return UpdateState.SUPERSEDED
            candidate = waited
            pending.proposed_values = dict(candidate.values)

        self._transition(batch, UpdateState.SUBMITTING)
        tx_hash = await self._submit(candidate, pending)

        self._transition(batch, UpdateState.AWAITING_CONFIRMATION, tx_hash, tx_hash=tx_hash)
        result = await self.tracker.track(
            tx_hash, still_due=lambda: self._still_due(batch, pending)
        )
        pending.confirmations = result.confirmations

        if result.outcome is ConfirmationOutcome.CONFIRMED:
            # Must happen before the next evaluation of this batch
            self.cache.invalidate(self._cache_keys(batch))
            self._transition(
                batch, UpdateState.CONFIRMED,
                f"{tx_hash} ({result.confirmations} confirmations)",
                tx_hash=tx_hash, confirmations=result.confirmations,
            )
            return UpdateState.CONFIRMED

        if result.outcome is ConfirmationOutcome.SUPERSEDED:
            self.cache.invalidate(self._cache_keys(batch))
            self._transition(batch, UpdateState.SUPERSEDED, f"{tx_hash} overtaken", tx_hash=tx_hash)
            return UpdateState.SUPERSEDED

        self._transition(
            batch, UpdateState.TIMED_OUT,
            f"{tx_hash} not confirmed after {result.elapsed:.1f}s",
            tx_hash=tx_hash, confirmations=result.confirmations,
        )
        return UpdateState.TIMED_OUT

    async def _wait(
        self, batch: BatchConfig, candidate: BatchCandidate, deadline: float
    ) -> BatchCandidate | None:
        """Sit out the write delay, re-checking the chain each polling interval.

        :returns: The freshest candidate once the delay ends, or None if the
            batch stopped being due.
        """
        interval = batch.polling_interval_ms / 1000
        while (remaining := deadline - self._clock()) > 0:
            await self._sleep(min(interval, remaining))
            try:
                refreshed = await self.evaluate(batch, use_cache=False)
            except (EndpointFailure, RpcFailure) as e:
                logger.debug(f"[{self.chain.name}/{batch.batch_id}] Re-check failed: {e}")
                continue
            if refreshed is None:
                return None
            candidate = refreshed
        return candidate

    async def _still_due(self, batch: BatchConfig, pending: PendingUpdate) -> bool:
        try:
            return await self._plan(batch, pending.proposed_values, use_cache=False) is not None
        except RpcFailure as e:
            logger.debug(f"[{self.chain.name}/{batch.batch_id}] Re-check failed: {e}")
            return True

    async def _update_fee(self, batch: BatchConfig, oracle: str, payloads: list[bytes]) -> int:
        fees = [f.update_fee for f in batch.feeds if f.oracle_address == oracle]
        if fees and all(isinstance(fee, FixedUpdateFee) for fee in fees):
            return sum(fee.amount for fee in fees)
        return await self.chain_client.get_update_fee(oracle, payloads)

    async def _submit(self, candidate: BatchCandidate, pending: PendingUpdate) -> str:
        batch = candidate.batch
        calls = []
        for oracle, payloads in candidate.update_data_by_oracle().items():
            calls.append((oracle, await self._update_fee(batch, oracle, payloads), payloads))
        if not calls:
            raise RpcFailure("No update payloads to submit")

        tx = self.chain_client.build_update_tx(calls)
        pending.fee_plan = await self.fee_estimator.estimate(tx)

        timeout = self.chain.tx_config.transaction_timeout_ms / 1000
        self.status_of(batch.batch_id).submissions += 1
        try:
            tx_hash = await asyncio.wait_for(
                self.chain_client.send_transaction({**tx, **pending.fee_plan.to_tx_params()}),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise RpcFailure(f"send_transaction timed out after {timeout:.1f}s") from None

        pending.tx_hash = tx_hash
        pending.submitted_at = self._clock()
        logger.info(
            f"[{self.chain.name}/{batch.batch_id}] {self.worker} submitted {tx_hash} "
            f"({pending.fee_plan}, multiplier {self.chain.tx_config.gas_price_multiplier})"
        )
        return tx_hash
