"""Unit tests for the on-chain value cache."""

from fakes import FEED_A, FEED_B, ORACLE, FakeClock

from updater.src.onchain_cache import OnChainValueCache
from updater.src.StalenessEvaluator import OnChainValue

VALUE = OnChainValue(price=1, expo=0, publish_time=1)


class TestOnChainValueCache:
    """Test TTL and invalidation."""

    def test_disabled_with_zero_ttl(self) -> None:
        cache = OnChainValueCache(0)
        cache.set(ORACLE, FEED_A, VALUE)
        assert not cache.enabled
        assert cache.get(ORACLE, FEED_A) == (False, None)

    def test_hit_within_ttl(self) -> None:
        clock = FakeClock()
        cache = OnChainValueCache(5, clock=clock)
        cache.set(ORACLE, FEED_A, VALUE)
        clock.now += 4.9
        assert cache.get(ORACLE, FEED_A) == (True, VALUE)

    def test_expires(self) -> None:
        clock = FakeClock()
        cache = OnChainValueCache(5, clock=clock)
        cache.set(ORACLE, FEED_A, VALUE)
        clock.now += 5
        assert cache.get(ORACLE, FEED_A) == (False, None)

    def test_missing_value_is_cached(self) -> None:
        """A feed never written on-chain is a hit with value None."""
        cache = OnChainValueCache(5, clock=FakeClock())
        cache.set(ORACLE, FEED_A, None)
        assert cache.get(ORACLE, FEED_A) == (True, None)

    def test_invalidate(self) -> None:
        cache = OnChainValueCache(5, clock=FakeClock())
        cache.set(ORACLE, FEED_A, VALUE)
        cache.set(ORACLE, FEED_B, VALUE)
        cache.invalidate([(ORACLE, FEED_A)])
        assert cache.get(ORACLE, FEED_A) == (False, None)
        assert cache.get(ORACLE, FEED_B) == (True, VALUE)

    def test_clear(self) -> None:
        cache = OnChainValueCache(5, clock=FakeClock())
        cache.set(ORACLE, FEED_A, VALUE)
        cache.clear()
        assert cache.get(ORACLE, FEED_A) == (False, None)
