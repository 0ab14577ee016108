"""Unit tests for StalenessEvaluator."""

from decimal import Decimal

import pytest
from fakes import FEED_A, FEED_B, ORACLE

from updater.src.HermesClient import PriceAttestation
from updater.src.StalenessEvaluator import (
    OnChainValue,
    StalenessEvaluator,
    StalenessReason,
    deviation_exceeds,
)
from updater.src.UpdaterConfig import FeedConfig


def feed(early: int | None = None, feed_id: str = FEED_A) -> FeedConfig:
    return FeedConfig(
        address=feed_id,
        oracle_address=ORACLE,
        batch_id="0-pyth-feeds",
        description="WETH/USD",
        heartbeat_seconds=60,
        update_threshold_bips=10,
        early_update_seconds=early,
    )


def candidate(price: int, publish_time: int, feed_id: str = FEED_A) -> PriceAttestation:
    return PriceAttestation(
        feed_id=feed_id, price=price, conf=1, expo=-2, publish_time=publish_time, update_data=b"\x01"
    )


def stored(price: int, publish_time: int = 0) -> OnChainValue:
    return OnChainValue(price=price, expo=-2, publish_time=publish_time)


class TestDeviation:
    """Test the deviation rule in isolation."""

    @pytest.mark.parametrize(
        "new, expected",
        [
            ("100.2", True),
            ("99.8", True),
            ("100.1", True),
            ("100.09", False),
            ("100.05", False),
            ("100", False),
        ],
    )
    def test_threshold_10_bips(self, new: str, expected: bool) -> None:
        assert deviation_exceeds(Decimal("100"), Decimal(new), 10) is expected

    def test_zero_on_chain(self) -> None:
        assert deviation_exceeds(Decimal(0), Decimal("0.01"), 10)
        assert not deviation_exceeds(Decimal(0), Decimal(0), 10)


class TestEvaluate:
    """Test rule ordering for a single feed."""

    @pytest.fixture
    def evaluator(self) -> StalenessEvaluator:
        return StalenessEvaluator()

    def test_heartbeat(self, evaluator: StalenessEvaluator) -> None:
        """Written at t=0 with heartbeat 60: due at t=60, not at t=59."""
        on_chain = stored(10000, publish_time=0)
        not_yet = evaluator.evaluate(feed(), on_chain, candidate(10000, 59), now=59)
        due = evaluator.evaluate(feed(), on_chain, candidate(10000, 60), now=60)
        assert not not_yet.due
        assert not_yet.reason is StalenessReason.FRESH
        assert due.due
        assert due.reason is StalenessReason.HEARTBEAT

    def test_deviation(self, evaluator: StalenessEvaluator) -> None:
        on_chain = stored(10000, publish_time=100)
        result = evaluator.evaluate(feed(), on_chain, candidate(10020, 110), now=110)
        assert result.due
        assert result.reason is StalenessReason.DEVIATION

    def test_small_move_not_due(self, evaluator: StalenessEvaluator) -> None:
        on_chain = stored(10000, publish_time=100)
        result = evaluator.evaluate(feed(), on_chain, candidate(10005, 110), now=110)
        assert not result.due

    def test_missing_on_chain(self, evaluator: StalenessEvaluator) -> None:
        result = evaluator.evaluate(feed(), None, candidate(10000, 110), now=110)
        assert result.due
        assert result.reason is StalenessReason.MISSING

    def test_no_candidate(self, evaluator: StalenessEvaluator) -> None:
        result = evaluator.evaluate(feed(), None, None, now=110)
        assert not result.due
        assert result.reason is StalenessReason.NO_CANDIDATE

    def test_not_newer(self, evaluator: StalenessEvaluator) -> None:
        """A candidate no newer than the stored value is never due."""
        on_chain = stored(10000, publish_time=100)
        result = evaluator.evaluate(feed(), on_chain, candidate(20000, 100), now=500)
        assert not result.due
        assert result.reason is StalenessReason.NOT_NEWER

    def test_early_update(self, evaluator: StalenessEvaluator) -> None:
        """With heartbeat 60 and early 10, an update is allowed from age 50."""
        on_chain = stored(10000, publish_time=0)
        before = evaluator.evaluate(feed(early=10), on_chain, candidate(10000, 49), now=49)
        inside = evaluator.evaluate(feed(early=10), on_chain, candidate(10000, 50), now=50)
        assert not before.due
        assert inside.due
        assert inside.reason is StalenessReason.EARLY_UPDATE

    def test_evaluate_all(self, evaluator: StalenessEvaluator) -> None:
        feeds = [feed(feed_id=FEED_A), feed(feed_id=FEED_B)]
        results = evaluator.evaluate_all(
            feeds,
            {FEED_A: stored(10000, 100), FEED_B: stored(10000, 100)},
            {FEED_A: candidate(10000, 110, FEED_A), FEED_B: candidate(10100, 110, FEED_B)},
            now=110,
        )
        assert not results[FEED_A].due
        assert results[FEED_B].reason is StalenessReason.DEVIATION
