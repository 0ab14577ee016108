"""ConfirmationTracker: Waits for a submitted transaction to reach depth.

Polls at a fixed cadence rather than backing off: confirmation depth changes
every block on short block-time chains, and a missed window costs far more
than an extra receipt lookup. When the deadline passes the transaction is
left alone; it may still land, and any worker will see that on its next
staleness evaluation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from .errors import RpcFailure, SubmissionRejected

logger = logging.getLogger(__name__)


class ConfirmationSource(Protocol):
    async def get_confirmations(self, tx_hash: str) -> int | None: ...


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ConfirmationResult:
    """Terminal outcome of tracking one transaction.

    :ivar outcome: Confirmed, timed out, or superseded.
    :ivar confirmations: Last observed confirmation depth.
    :ivar elapsed: Seconds spent tracking.
    """

    outcome: ConfirmationOutcome
    confirmations: int
    elapsed: float


class ConfirmationTracker:
    """Polls a transaction until it is confirmed or the deadline passes.

    :ivar polling_interval: Seconds between polls.
    :ivar timeout: Seconds before giving up.
    :ivar required_confirmations: Depth that counts as confirmed.
    """

    def __init__(
        self,
        source: ConfirmationSource,
        polling_interval_ms: int,
        timeout_ms: int,
        required_confirmations: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the tracker.

        :param source: Chain client answering confirmation queries.
        :param polling_interval_ms: Poll cadence in milliseconds.
        :param timeout_ms: Total wait in milliseconds.
        :param required_confirmations: Confirmations needed.
        :param clock: Monotonic clock.
        :param sleep: Async sleep function.
        """
        self.source = source
        self.polling_interval = polling_interval_ms / 1000
        self.timeout = timeout_ms / 1000
        self.required_confirmations = required_confirmations
        self._clock = clock
        self._sleep = sleep

    async def track(
        self,
        tx_hash: str,
        still_due: Callable[[], Awaitable[bool]] | None = None,
    ) -> ConfirmationResult:
        """Wait for ``tx_hash`` to reach the required depth.

        :param tx_hash: Hash of the submitted transaction.
        :param still_due: Optional check, consulted while the transaction is
            not yet included; returning False means another worker's update
            landed first.
        :returns: Terminal result.
        :raises SubmissionRejected: If the transaction reverted.
        """
        started = self._clock()
        deadline = started + self.timeout
        confirmations = 0

        while True:
            try:
                depth = await self.source.get_confirmations(tx_hash)
            except SubmissionRejected:
                raise
            except RpcFailure as e:
                logger.warning(f"Confirmation poll for {tx_hash} failed: {e}")
                depth = None

            if depth is not None:
                confirmations = depth
                if confirmations >= self.required_confirmations:
                    return ConfirmationResult(
                        ConfirmationOutcome.CONFIRMED, confirmations, self._clock() - started
                    )
            elif still_due is not None and not await still_due():
                return ConfirmationResult(
                    ConfirmationOutcome.SUPERSEDED, confirmations, self._clock() - started
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.info(
                    f"Gave up waiting for {tx_hash} after {self.timeout:.1f}s "
                    f"({confirmations}/{self.required_confirmations} confirmations)"
                )
                return ConfirmationResult(
                    ConfirmationOutcome.TIMED_OUT, confirmations, self._clock() - started
                )
            await self._sleep(min(self.polling_interval, remaining))
