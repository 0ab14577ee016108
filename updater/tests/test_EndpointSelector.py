"""Unit tests for EndpointSelector."""

import asyncio

import pytest

from updater.src.EndpointSelector import (
    Endpoint,
    EndpointEntry,
    EndpointMode,
    EndpointSelector,
    priority_of,
    rank_endpoints,
)
from updater.src.errors import EndpointFailure
from updater.src.UpdaterConfig import WorkerIdentity


def entry(name: str, priority, url: str | None = None, mode=EndpointMode.BOTH) -> EndpointEntry:
    return EndpointEntry(name, f"https://{name.lower()}.example" if url is None else url, mode, priority)


class TestEndpointMode:
    """Test mode parsing."""

    def test_parse(self) -> None:
        assert EndpointMode.parse("both") is EndpointMode.BOTH
        assert EndpointMode.parse("rest-only") is EndpointMode.REST
        assert EndpointMode.parse("Subscription-Only") is EndpointMode.SUBSCRIPTION

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown endpoint mode"):
            EndpointMode.parse("carrier-pigeon")

    def test_allows(self) -> None:
        assert EndpointMode.BOTH.allows_rest and EndpointMode.BOTH.allows_subscription
        assert not EndpointMode.REST.allows_subscription
        assert not EndpointMode.SUBSCRIPTION.allows_rest


class TestRanking:
    """Test per-worker ranking."""

    def test_stable_sort_by_priority(self) -> None:
        """Ties keep declaration order: A(2), B(1), C(2) -> B, A, C."""
        entries = [entry("A", {"1": 2}), entry("B", {"1": 1}), entry("C", {"1": 2})]
        ranked = rank_endpoints(entries, WorkerIdentity(1))
        assert [e.name for e in ranked] == ["B", "A", "C"]

    def test_workers_rank_differently(self) -> None:
        entries = [entry("A", {"1": 1, "2": 2}), entry("B", {"1": 2, "2": 1})]
        assert [e.name for e in rank_endpoints(entries, WorkerIdentity(1))] == ["A", "B"]
        assert [e.name for e in rank_endpoints(entries, WorkerIdentity(2))] == ["B", "A"]

    def test_scalar_and_default_priority(self) -> None:
        assert priority_of(entry("A", 3), 9) == 3
        assert priority_of(entry("A", {"1": 1, "default": 4}), 9) == 4

    def test_missing_priority(self) -> None:
        assert priority_of(entry("A", {"1": 1}), 2) is None

    def test_unranked_entries_go_last(self) -> None:
        """Entries without a priority for the worker follow in declaration order."""
        entries = [
            entry("A", {"1": 1}),
            entry("B", {"2": 5}),
            entry("C", {"1": 2}),
            entry("D", {"2": 1}),
        ]
        ranked = rank_endpoints(entries, WorkerIdentity(2))
        assert [e.name for e in ranked] == ["D", "B", "A", "C"]

    def test_no_priorities_for_worker(self) -> None:
        entries = [entry("A", {"1": 2}), entry("B", {"1": 1})]
        assert [e.name for e in rank_endpoints(entries, WorkerIdentity(5))] == ["A", "B"]

    def test_non_integer_priority(self) -> None:
        with pytest.raises(TypeError):
            priority_of(entry("A", "high"), 1)

    def test_empty_url_dropped(self) -> None:
        entries = [entry("A", 1, url=""), entry("B", 2)]
        assert [e.name for e in rank_endpoints(entries, WorkerIdentity(1))] == ["B"]

    def test_trailing_slash_stripped(self) -> None:
        ranked = rank_endpoints([entry("A", 1, url="https://a.example/")], WorkerIdentity(1))
        assert ranked == [Endpoint("A", "https://a.example", EndpointMode.BOTH)]


class TestFirstUsable:
    """Test failover across ranked endpoints."""

    @pytest.fixture
    def selector(self) -> EndpointSelector:
        return EndpointSelector(
            [
                Endpoint("stream", "https://s.example", EndpointMode.SUBSCRIPTION),
                Endpoint("primary", "https://p.example", EndpointMode.BOTH),
                Endpoint("backup", "https://b.example", EndpointMode.REST),
            ],
            deadline=0.05,
        )

    def test_mode_filtering(self, selector: EndpointSelector) -> None:
        assert [e.name for e in selector.rest_endpoints()] == ["primary", "backup"]
        assert [e.name for e in selector.subscription_endpoints()] == ["stream", "primary"]

    @pytest.mark.asyncio
    async def test_first_success_wins(self, selector: EndpointSelector) -> None:
        tried = []

        async def attempt(endpoint: Endpoint) -> str:
            tried.append(endpoint.name)
            return f"from {endpoint.name}"

        endpoint, result = await selector.first_usable(attempt)
        assert endpoint.name == "primary"
        assert result == "from primary"
        assert tried == ["primary"]

    @pytest.mark.asyncio
    async def test_timeout_fails_over(self, selector: EndpointSelector) -> None:
        """An endpoint slower than the deadline counts as failed."""
        tried = []

        async def attempt(endpoint: Endpoint) -> str:
            tried.append(endpoint.name)
            if endpoint.name == "stream":
                await asyncio.sleep(1)
            return "ok"

        endpoint, result = await selector.first_usable(attempt, subscription=True)
        assert tried == ["stream", "primary"]
        assert endpoint.name == "primary"
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_unusable_result_fails_over(self, selector: EndpointSelector) -> None:
        """None means the endpoint answered without every requested feed."""

        async def attempt(endpoint: Endpoint) -> str | None:
            return None if endpoint.name == "primary" else "ok"

        endpoint, _ = await selector.first_usable(attempt)
        assert endpoint.name == "backup"

    @pytest.mark.asyncio
    async def test_rest_only_never_used_for_subscription(
        self, selector: EndpointSelector
    ) -> None:
        tried = []

        async def attempt(endpoint: Endpoint) -> None:
            tried.append(endpoint.name)
            return None

        with pytest.raises(EndpointFailure):
            await selector.first_usable(attempt, subscription=True)
        assert tried == ["stream", "primary"]

    @pytest.mark.asyncio
    async def test_any_mode_tries_every_endpoint(self, selector: EndpointSelector) -> None:
        tried = []

        async def attempt(endpoint: Endpoint) -> None:
            tried.append(endpoint.name)
            return None

        with pytest.raises(EndpointFailure):
            await selector.first_usable(attempt, subscription=None)
        assert tried == ["stream", "primary", "backup"]

    @pytest.mark.asyncio
    async def test_error_then_success(self, selector: EndpointSelector) -> None:
        async def attempt(endpoint: Endpoint) -> str:
            if endpoint.name == "primary":
                raise RuntimeError("HTTP 500")
            return "ok"

        endpoint, result = await selector.first_usable(attempt)
        assert endpoint.name == "backup"
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_all_fail(self, selector: EndpointSelector) -> None:
        async def attempt(endpoint: Endpoint) -> str:
            if endpoint.name == "primary":
                await asyncio.sleep(1)
            raise RuntimeError("boom")

        with pytest.raises(EndpointFailure) as exc_info:
            await selector.first_usable(attempt)
        assert set(exc_info.value.errors) == {"primary", "backup"}
        assert "timeout" in exc_info.value.errors["primary"]
        assert exc_info.value.errors["backup"] == "boom"

    @pytest.mark.asyncio
    async def test_no_endpoints(self) -> None:
        async def attempt(endpoint: Endpoint) -> str:
            return "ok"

        with pytest.raises(EndpointFailure, match="none configured"):
            await EndpointSelector([]).first_usable(attempt)
