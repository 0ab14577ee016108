"""FeeEstimator: Gas price and gas limit proposals.

EIP-1559 transactions bid at a percentile of recent base fees (with a
headroom multiplier) plus the same percentile of recent priority fees. The
whole proposal is then scaled by the worker's gas price multiplier, which
grows with worker index, so a backup worker taking over a stalled update
always outbids the workers before it.

All multiplier arithmetic is integer: ``floor(value * dividend / divisor)``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Sequence

from .UpdaterConfig import EstimatedGasLimit, FixedGasLimit, TxType

if TYPE_CHECKING:
    from .UpdaterConfig import TxConfig

logger = logging.getLogger(__name__)


class FeeSource(Protocol):
    async def historical_base_fees(self, block_count: int) -> list[int]: ...

    async def historical_priority_fees(self, block_count: int, percentile: int) -> list[int]: ...

    async def gas_price(self) -> int: ...

    async def estimate_gas(self, tx: dict[str, Any]) -> int: ...


@dataclass(frozen=True)
class FeePlan:
    """Fee and gas parameters for one submission attempt."""

    gas_limit: int
    tx_type: TxType
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    gas_price: int | None = None

    def to_tx_params(self) -> dict[str, Any]:
        """Render as web3 transaction fields."""
        params: dict[str, Any] = {"gas": self.gas_limit}
        if self.tx_type is TxType.EIP1559:
            params["type"] = 2
            params["maxFeePerGas"] = self.max_fee_per_gas
            params["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        else:
            params["gasPrice"] = self.gas_price
        return params

    def __str__(self) -> str:
        if self.tx_type is TxType.EIP1559:
            return (
                f"gas={self.gas_limit}, maxFee={self.max_fee_per_gas}, "
                f"maxPriority={self.max_priority_fee_per_gas}"
            )
        return f"gas={self.gas_limit}, gasPrice={self.gas_price}"


def percentile_of(values: Sequence[int], percentile: int) -> int:
    """Nearest-rank percentile of integer samples.

    :param values: Samples (any order).
    :param percentile: Percentile within [0, 100].
    :returns: The sample at that rank, or 0 for no samples.

    .. code-block:: python

        >>> percentile_of([10, 20, 30, 40], 75)
        30
    """
    if not values:
        return 0
    ordered = sorted(values)
    rank = math.ceil(percentile / 100 * len(ordered))
    return ordered[min(max(rank - 1, 0), len(ordered) - 1)]


class FeeEstimator:
    """Builds fee plans for one chain and worker.

    :ivar tx_config: Transaction configuration resolved for this worker.
    """

    def __init__(self, tx_config: TxConfig, source: FeeSource) -> None:
        """Initialize the estimator.

        :param tx_config: Chain transaction configuration for this worker.
        :param source: Chain client providing fee history and estimation.
        """
        self.tx_config = tx_config
        self.source = source

    async def propose_gas_price(self) -> tuple[int | None, int | None, int | None]:
        """Compute the gas price fields.

        :returns: Tuple of (max_fee_per_gas, max_priority_fee_per_gas, gas_price);
            the fields not used by the configured tx type are None.
        """
        multiplier = self.tx_config.gas_price_multiplier

        if self.tx_config.tx_type is TxType.LEGACY:
            return None, None, multiplier.apply(await self.source.gas_price())

        eip = self.tx_config.eip1559
        base_fees = await self.source.historical_base_fees(eip.historical_blocks)
        priority_fees = await self.source.historical_priority_fees(
            eip.historical_blocks, eip.percentile
        )
        base = eip.base_fee_multiplier.apply(percentile_of(base_fees, eip.percentile))
        priority = percentile_of(priority_fees, eip.percentile)

        return multiplier.apply(base + priority), multiplier.apply(priority), None

    async def propose_gas_limit(self, tx: dict[str, Any]) -> int:
        """Compute the gas limit for a transaction.

        :param tx: Transaction to estimate (ignored for fixed limits).
        :returns: Gas limit.
        """
        policy = self.tx_config.gas_limit_policy
        if isinstance(policy, FixedGasLimit):
            return policy.value
        if isinstance(policy, EstimatedGasLimit):
            estimate = await self.source.estimate_gas(tx)
            return policy.multiplier.apply(estimate)
        raise TypeError(f"Unknown gas limit policy {policy!r}")

    async def estimate(self, tx: dict[str, Any]) -> FeePlan:
        """Build a complete fee plan.

        :param tx: Unsigned transaction (to, data, value, from).
        :returns: Fee plan.
        :raises RpcFailure: If fee history or estimation fails.
        """
        max_fee, max_priority, gas_price = await self.propose_gas_price()
        plan = FeePlan(
            gas_limit=await self.propose_gas_limit(tx),
            tx_type=self.tx_config.tx_type,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=max_priority,
            gas_price=gas_price,
        )
        logger.debug(f"Fee plan ({self.tx_config.gas_price_multiplier}x): {plan}")
        return plan
