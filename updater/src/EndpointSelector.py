"""EndpointSelector: Worker-specific ranking and failover of price endpoints.

Endpoints are declared once for the whole fleet with a priority per worker
index. Ranking happens once at startup; downstream code only ever sees the
ordered ``(name, url, mode)`` list.

.. code-block:: python

    >>> entries = [
    ...     EndpointEntry("A", "https://a", EndpointMode.BOTH, {"1": 2}),
    ...     EndpointEntry("B", "https://b", EndpointMode.BOTH, {"1": 1}),
    ...     EndpointEntry("C", "https://c", EndpointMode.BOTH, {"1": 2}),
    ... ]
    >>> [e.name for e in rank_endpoints(entries, WorkerIdentity(1))]
    ['B', 'A', 'C']
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence, TypeVar

from .errors import EndpointFailure

if TYPE_CHECKING:
    from .UpdaterConfig import WorkerIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ENDPOINT_DEADLINE = 2.0


class EndpointMode(str, Enum):
    """How an endpoint may be used."""

    SUBSCRIPTION = "subscription"
    REST = "rest"
    BOTH = "both"

    @classmethod
    def parse(cls, value: str) -> EndpointMode:
        """Parse a mode name, accepting the ``-only`` spellings.

        :param value: e.g. "rest", "rest-only", "subscription-only", "both".
        :returns: Matching mode.
        :raises ValueError: If the name is unknown.
        """
        normalized = str(value).lower().removesuffix("-only")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown endpoint mode {value!r}") from None

    @property
    def allows_rest(self) -> bool:
        return self is not EndpointMode.SUBSCRIPTION

    @property
    def allows_subscription(self) -> bool:
        return self is not EndpointMode.REST


@dataclass(frozen=True)
class Endpoint:
    """A ranked price endpoint, stripped of its priority table."""

    name: str
    url: str
    mode: EndpointMode = EndpointMode.BOTH


@dataclass(frozen=True)
class EndpointEntry:
    """An endpoint as declared in configuration.

    :ivar priority: Either an int shared by all workers, or a mapping of
        worker index (as string) to int, optionally with a ``"default"`` key.
    """

    name: str
    url: str
    mode: EndpointMode
    priority: Any


def priority_of(entry: EndpointEntry, worker_index: int) -> int | None:
    """Resolve the priority of an endpoint for a worker.

    :param entry: Declared endpoint.
    :param worker_index: 1-based worker index.
    :returns: Priority (lower is tried first), or None if the table has
        neither an entry for this worker nor a ``"default"``.
    :raises TypeError: If the priority is not an integer.
    """
    priority = entry.priority
    if isinstance(priority, dict):
        key = str(worker_index)
        if key in priority:
            priority = priority[key]
        elif "default" in priority:
            priority = priority["default"]
        else:
            return None
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise TypeError(f"endpoint {entry.name!r} has non-integer priority {priority!r}")
    return priority


def rank_endpoints(entries: Sequence[EndpointEntry], worker: WorkerIdentity) -> list[Endpoint]:
    """Order endpoints for a worker.

    Stable sort ascending by priority; ties keep declaration order. Entries
    with no priority for this worker come last, in declaration order. Entries
    without a URL are dropped.

    :param entries: Declared endpoints.
    :param worker: Worker to rank for.
    :returns: Ordered endpoints without priority data.
    :raises TypeError: If a priority is not an integer.
    """
    keyed = []
    for entry in entries:
        if not entry.url:
            logger.warning(f"Endpoint {entry.name} has no URL configured, skipping")
            continue
        priority = priority_of(entry, worker.index)
        if priority is None:
            logger.info(
                f"Endpoint {entry.name} has no priority for worker {worker.index}, ranking it last"
            )
        keyed.append(((priority is None, priority or 0), entry))

    ranked = [entry for _, entry in sorted(keyed, key=lambda item: item[0])]
    return [Endpoint(name=e.name, url=e.url.rstrip("/"), mode=e.mode) for e in ranked]


class EndpointSelector:
    """Tries ranked endpoints in order until one yields a usable result.

    :ivar endpoints: Ranked endpoints for this worker.
    :ivar deadline: Per-endpoint deadline in seconds.
    """

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        deadline: float = DEFAULT_ENDPOINT_DEADLINE,
    ) -> None:
        """Initialize the selector.

        :param endpoints: Endpoints already ranked for this worker.
        :param deadline: Seconds allowed per endpoint attempt (default: 2.0).
        """
        self.endpoints = tuple(endpoints)
        self.deadline = deadline

    def rest_endpoints(self) -> list[Endpoint]:
        """Endpoints that may be polled request/response style."""
        return [e for e in self.endpoints if e.mode.allows_rest]

    def subscription_endpoints(self) -> list[Endpoint]:
        """Endpoints that may be used for streaming subscriptions."""
        return [e for e in self.endpoints if e.mode.allows_subscription]

    async def first_usable(
        self,
        attempt: Callable[[Endpoint], Awaitable[T | None]],
        *,
        subscription: bool | None = False,
    ) -> tuple[Endpoint, T]:
        """Run ``attempt`` against each eligible endpoint in rank order.

        An attempt fails when it raises, exceeds the deadline, or returns None.

        :param attempt: Coroutine function fetching from one endpoint.
        :param subscription: True for subscription endpoints, False for REST
            ones, None for every endpoint regardless of mode.
        :returns: The winning endpoint and its result.
        :raises EndpointFailure: If every eligible endpoint failed.
        """
        if subscription is None:
            candidates = list(self.endpoints)
        elif subscription:
            candidates = self.subscription_endpoints()
        else:
            candidates = self.rest_endpoints()
        errors: dict[str, str] = {}

        for endpoint in candidates:
            try:
                result = await asyncio.wait_for(attempt(endpoint), timeout=self.deadline)
            except asyncio.TimeoutError:
                errors[endpoint.name] = f"timeout after {self.deadline}s"
                logger.warning(f"[{endpoint.name}] Timed out after {self.deadline}s")
                continue
            except Exception as e:
                errors[endpoint.name] = str(e)
                logger.warning(f"[{endpoint.name}] Fetch failed: {e}")
                continue

            if result is None:
                errors[endpoint.name] = "no usable result"
                logger.warning(f"[{endpoint.name}] Returned no usable result")
                continue

            logger.debug(f"[{endpoint.name}] Selected")
            return endpoint, result

        raise EndpointFailure(errors)
