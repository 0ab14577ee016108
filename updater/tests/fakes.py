"""In-memory stand-ins for the clock, Hermes and the chain."""

from __future__ import annotations

import asyncio
import copy
import json
from typing import Any

from updater.src.ConfirmationTracker import ConfirmationTracker
from updater.src.errors import EndpointFailure, SubmissionRejected
from updater.src.FeeEstimator import FeeEstimator
from updater.src.HermesClient import PriceAttestation
from updater.src.onchain_cache import OnChainValueCache
from updater.src.StalenessEvaluator import OnChainValue
from updater.src.SubmissionCoordinator import SubmissionCoordinator
from updater.src.UpdaterConfig import UpdaterConfig, parse_config

FEED_A = "0x" + "11" * 32
FEED_B = "0x" + "22" * 32
ORACLE = "0x853e88c0db7f55318ae03fe4dd0a67ffa10d8bc2"
PYTH = "0x2880ab155794e7179c9ee2e38200202908c17b43"
MULTICALL = "0xca11bde05977b3631167028862be2a173976ca11"

START = 1000.0


BASE_DOCUMENT: dict[str, Any] = {
    "httpCacheSeconds": 0,
    "onchainCacheTtlSeconds": {"1": 30, "default": 0},
    "pythHermesEndpoints": [
        {"name": "A", "url": "https://a.example", "priority": {"1": 2, "2": 1}},
        {"name": "B", "url": "https://b.example", "priority": {"1": 1, "2": 2}},
        {"name": "C", "url": "https://c.example", "priority": {"1": 2, "2": 3}},
    ],
    "chains": {
        "testnet": {
            "chainId": 1625,
            "rpcUrl": "http://localhost:8545",
            "txConfig": {
                "gasLimitMultiplier": {"dividend": 2, "divisor": 1},
                "transactionTimeoutMs": 30000,
                "txType": 2,
                "eip1559": {
                    "percentile": 75,
                    "historicalBlocks": 20,
                    "baseFeeMultiplier": {"dividend": 125, "divisor": 100},
                },
                "gasPriceMultiplier": {"dividend": 100, "dividendStep": 50, "divisor": 100},
                "confirmationPollingIntervalMs": 250,
                "confirmationTimeoutMs": 2000,
                "requiredConfirmations": 5,
            },
            "multicallAddress": MULTICALL,
            "pythAddress": PYTH,
            "batches": {
                "0": {
                    "batchId": "0-pyth-feeds",
                    "pollingIntervalMs": {"1": 1000, "2": 4000, "default": 10000},
                    "writeDelayStepMs": 15000,
                    "customerId": "pyth-test",
                }
            },
            "oracles": [
                {
                    "address": ORACLE,
                    "tokens": [
                        {
                            "address": FEED_A,
                            "batch": 0,
                            "extra": {"desc": "WETH/USD", "heartbeat": 60, "updateThreshold": 10},
                        },
                        {
                            "address": FEED_B,
                            "batch": 0,
                            "extra": {"desc": "WBTC/USD", "heartbeat": 60, "updateThreshold": 10},
                        },
                    ],
                }
            ],
        }
    },
}


def make_document() -> dict[str, Any]:
    return copy.deepcopy(BASE_DOCUMENT)


def make_config(worker_index: int = 1, document: dict | None = None) -> UpdaterConfig:
    return parse_config(document or make_document(), worker_index, environ={})


class FakeClock:
    """A clock that only moves when something sleeps on it.

    When several ``participants`` share the clock, time advances only once
    all of them are asleep, and then to the earliest wake-up time.
    """

    def __init__(self, start: float = START) -> None:
        self.now = start
        self.participants = 1
        self._wakeups: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        wake_at = self.now + seconds
        self._wakeups.append(wake_at)
        try:
            while self.now < wake_at:
                if len(self._wakeups) >= self.participants and wake_at == min(self._wakeups):
                    self.now = wake_at
                else:
                    await asyncio.sleep(0)
        finally:
            self._wakeups.remove(wake_at)
        await asyncio.sleep(0)

    async def run_together(self, *coroutines) -> list[Any]:
        """Run coroutines concurrently, all sleeping on this clock."""

        async def participant(coroutine):
            try:
                return await coroutine
            finally:
                self.participants -= 1

        self.participants = len(coroutines)
        try:
            return await asyncio.gather(*(participant(c) for c in coroutines))
        finally:
            self.participants = 1


def encode_update(prices: dict[str, tuple[int, int]], expo: int = -2) -> bytes:
    return json.dumps({fid: [p, t, expo] for fid, (p, t) in prices.items()}).encode()


def decode_update(payload: bytes) -> dict[str, OnChainValue]:
    return {
        fid: OnChainValue(price=p, expo=expo, publish_time=t)
        for fid, (p, t, expo) in json.loads(payload).items()
    }


class FakePrices:
    """Hermes stand-in: every fetch returns prices published "now"."""

    def __init__(self, clock: FakeClock, prices: dict[str, int] | None = None) -> None:
        self.clock = clock
        self.prices = prices or {FEED_A: 10000, FEED_B: 5000000}
        self.fail = False
        self.calls = 0

    async def fetch(
        self, feed_ids, *, subscription: bool | None = None
    ) -> dict[str, PriceAttestation]:
        self.calls += 1
        if self.fail:
            raise EndpointFailure({"A": "down"})
        publish_time = int(self.clock())
        payload = encode_update({fid: (self.prices[fid], publish_time) for fid in feed_ids})
        return {
            fid: PriceAttestation(
                feed_id=fid,
                price=self.prices[fid],
                conf=1,
                expo=-2,
                publish_time=publish_time,
                update_data=payload,
            )
            for fid in feed_ids
        }


class FakeChain:
    """Chain stand-in with scripted inclusion and third-party writes.

    :ivar confirm_after: Seconds after sending until inclusion, or None to
        never include.
    :ivar block_time: Seconds per additional confirmation.
    """

    def __init__(self, clock: FakeClock, values: dict[str, OnChainValue] | None = None) -> None:
        self.clock = clock
        self.values: dict[str, OnChainValue] = dict(values or {})
        self.sent: list[tuple[float, dict[str, Any]]] = []
        self.scheduled: list[tuple[float, dict[str, OnChainValue]]] = []
        self.confirm_after: float | None = 0.5
        self.block_time = 0.25
        self.reject = False
        self.reads = 0
        self._sent_at: dict[str, float] = {}
        self._landed: set[str] = set()
        self._tx: dict[str, dict[str, Any]] = {}

    def schedule(self, at: float, values: dict[str, OnChainValue]) -> None:
        """Simulate another worker's update landing at ``at``."""
        self.scheduled.append((at, values))

    def _apply_scheduled(self) -> None:
        for at, values in list(self.scheduled):
            if self.clock() >= at:
                self.values.update(values)
                self.scheduled.remove((at, values))

    async def read_on_chain_value(self, feed_id: str) -> OnChainValue | None:
        self._apply_scheduled()
        self.reads += 1
        return self.values.get(feed_id)

    async def historical_base_fees(self, block_count: int) -> list[int]:
        return [100] * block_count

    async def historical_priority_fees(self, block_count: int, percentile: int) -> list[int]:
        return [10] * block_count

    async def gas_price(self) -> int:
        return 100

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return 50_000

    async def get_update_fee(self, oracle: str, update_data) -> int:
        return len(update_data)

    def build_update_tx(self, calls) -> dict[str, Any]:
        return {
            "to": MULTICALL,
            "value": sum(fee for _, fee, _ in calls),
            "data": [(oracle, fee, list(payloads)) for oracle, fee, payloads in calls],
        }

    async def send_transaction(self, tx: dict[str, Any]) -> str:
        if self.reject:
            raise SubmissionRejected("replacement transaction underpriced")
        self.sent.append((self.clock(), tx))
        tx_hash = f"0x{len(self.sent):064x}"
        self._sent_at[tx_hash] = self.clock()
        self._tx[tx_hash] = tx
        return tx_hash

    async def get_confirmations(self, tx_hash: str) -> int | None:
        if self.confirm_after is None:
            return None
        elapsed = self.clock() - self._sent_at[tx_hash]
        if elapsed < self.confirm_after:
            return None
        if tx_hash not in self._landed:
            self._landed.add(tx_hash)
            for _, _, payloads in self._tx[tx_hash]["data"]:
                for payload in payloads:
                    self.values.update(decode_update(payload))
        return 1 + int((elapsed - self.confirm_after) / self.block_time)


def make_coordinator(
    worker_index: int,
    clock: FakeClock,
    prices: FakePrices,
    chain: FakeChain,
    document: dict | None = None,
) -> SubmissionCoordinator:
    config = make_config(worker_index, document)
    chain_config = config.chains["testnet"]
    tx = chain_config.tx_config
    return SubmissionCoordinator(
        chain=chain_config,
        worker=config.worker,
        prices=prices,
        chain_client=chain,
        fee_estimator=FeeEstimator(tx, chain),
        tracker=ConfirmationTracker(
            chain,
            polling_interval_ms=tx.confirmation_polling_interval_ms,
            timeout_ms=tx.confirmation_timeout_ms,
            required_confirmations=tx.required_confirmations,
            clock=clock,
            sleep=clock.sleep,
        ),
        cache=OnChainValueCache(config.onchain_cache_ttl_seconds, clock=clock),
        clock=clock,
        wall_clock=clock,
        sleep=clock.sleep,
    )
