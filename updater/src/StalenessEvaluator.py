"""StalenessEvaluator: Decides whether an on-chain feed needs refreshing.

Rules, checked in order:
    1. No value on-chain yet: due
    2. Candidate not newer than the on-chain value: not due (the contract
       would ignore it)
    3. Heartbeat: due once ``now - last_update >= heartbeat``
    4. Deviation: due once ``|candidate - on_chain| / on_chain >= bips / 10000``
    5. Early update: due once ``now - last_update >= heartbeat - early``

.. code-block:: python

    >>> deviation_exceeds(Decimal("100"), Decimal("100.2"), 10)
    True
    >>> deviation_exceeds(Decimal("100"), Decimal("100.05"), 10)
    False
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Mapping, Protocol, Sequence

if TYPE_CHECKING:
    from .UpdaterConfig import FeedConfig

BIPS_DENOMINATOR = 10_000


class StalenessReason(str, Enum):
    MISSING = "missing"
    NO_CANDIDATE = "no_candidate"
    NOT_NEWER = "not_newer"
    HEARTBEAT = "heartbeat"
    DEVIATION = "deviation"
    EARLY_UPDATE = "early_update"
    FRESH = "fresh"


class Candidate(Protocol):
    @property
    def value(self) -> Decimal: ...

    @property
    def publish_time(self) -> int: ...


@dataclass(frozen=True)
class OnChainValue:
    """A feed value as currently stored on-chain.

    :ivar price: Integer price mantissa.
    :ivar expo: Decimal exponent.
    :ivar publish_time: Unix publish time of the stored price.
    """

    price: int
    expo: int
    publish_time: int

    @property
    def value(self) -> Decimal:
        return Decimal(self.price).scaleb(self.expo)


@dataclass(frozen=True)
class StalenessResult:
    """Whether a feed is due, and which rule decided it."""

    due: bool
    reason: StalenessReason


def deviation_exceeds(on_chain: Decimal, candidate: Decimal, threshold_bips: int) -> bool:
    """Check whether the relative change reaches the threshold.

    Compares ``|candidate - on_chain| * 10000 >= threshold_bips * |on_chain|``
    so no division happens. A zero on-chain value is due for any change.

    :param on_chain: Stored value.
    :param candidate: Freshly fetched value.
    :param threshold_bips: Threshold in basis points.
    :returns: True if the deviation rule fires.
    """
    change = abs(Decimal(candidate) - Decimal(on_chain))
    if on_chain == 0:
        return change > 0
    return change * BIPS_DENOMINATOR >= threshold_bips * abs(Decimal(on_chain))


class StalenessEvaluator:
    """Applies the heartbeat, deviation and early-update rules to feeds."""

    def evaluate(
        self,
        feed: FeedConfig,
        on_chain: OnChainValue | None,
        candidate: Candidate | None,
        now: float,
    ) -> StalenessResult:
        """Evaluate one feed.

        :param feed: Feed configuration (heartbeat, threshold, early window).
        :param on_chain: Current on-chain value, or None if never written.
        :param candidate: Freshly fetched price, or None if unavailable.
        :param now: Current unix time in seconds.
        :returns: Due flag and triggering reason.
        """
        if candidate is None:
            return StalenessResult(False, StalenessReason.NO_CANDIDATE)
        if on_chain is None:
            return StalenessResult(True, StalenessReason.MISSING)
        if candidate.publish_time <= on_chain.publish_time:
            return StalenessResult(False, StalenessReason.NOT_NEWER)

        age = now - on_chain.publish_time
        if age >= feed.heartbeat_seconds:
            return StalenessResult(True, StalenessReason.HEARTBEAT)

        if deviation_exceeds(on_chain.value, candidate.value, feed.update_threshold_bips):
            return StalenessResult(True, StalenessReason.DEVIATION)

        if (
            feed.early_update_seconds is not None
            and age >= feed.heartbeat_seconds - feed.early_update_seconds
        ):
            return StalenessResult(True, StalenessReason.EARLY_UPDATE)

        return StalenessResult(False, StalenessReason.FRESH)

    def evaluate_all(
        self,
        feeds: Sequence[FeedConfig],
        on_chain: Mapping[str, OnChainValue | None],
        candidates: Mapping[str, Candidate],
        now: float,
    ) -> dict[str, StalenessResult]:
        """Evaluate several feeds.

        :param feeds: Feeds to evaluate.
        :param on_chain: On-chain values keyed by feed id.
        :param candidates: Fetched prices keyed by feed id.
        :param now: Current unix time in seconds.
        :returns: Results keyed by feed id.
        """
        return {
            feed.address: self.evaluate(
                feed, on_chain.get(feed.address), candidates.get(feed.address), now
            )
            for feed in feeds
        }
