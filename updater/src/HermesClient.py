"""HermesClient: Pyth Hermes price attestation client.

Fetches signed price updates for a set of Pyth feed ids, walking the ranked
endpoint list through :class:`EndpointSelector`. Two access styles exist and
an endpoint's mode decides which it may serve:

    - REST: ``GET /v2/updates/price/latest``
    - Subscription: ``GET /v2/updates/price/stream`` (server-sent events),
      read until every requested feed has been seen

A shared httpx.AsyncClient is used across all requests to avoid connection
overhead.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, ClassVar, Sequence

import httpx

from .EndpointSelector import Endpoint, EndpointSelector

logger = logging.getLogger(__name__)


class HermesError(Exception):
    """Raised when a Hermes request fails or returns an unusable payload."""

    pass


class HermesHTTPError(HermesError):
    """Raised when a Hermes request returns a non-2xx status.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


@dataclass(frozen=True)
class PriceAttestation:
    """A signed Pyth price with the update payload that proves it.

    :ivar feed_id: 0x-prefixed lowercase price id.
    :ivar price: Integer price mantissa.
    :ivar conf: Confidence interval mantissa.
    :ivar expo: Decimal exponent shared by price and conf.
    :ivar publish_time: Unix publish time in seconds.
    :ivar update_data: Binary update to pass to ``updatePriceFeeds``.
    """

    feed_id: str
    price: int
    conf: int
    expo: int
    publish_time: int
    update_data: bytes

    @property
    def value(self) -> Decimal:
        return Decimal(self.price).scaleb(self.expo)


def normalize_feed_id(feed_id: str) -> str:
    """Return a feed id as 0x-prefixed lowercase hex."""
    feed_id = feed_id.lower()
    return feed_id if feed_id.startswith("0x") else f"0x{feed_id}"


def parse_price_updates(payload: dict[str, Any]) -> dict[str, PriceAttestation]:
    """Parse a Hermes v2 price update payload.

    :param payload: Decoded JSON with ``binary`` and ``parsed`` sections.
    :returns: Attestations keyed by normalized feed id.
    :raises HermesError: If the payload shape is invalid.
    """
    try:
        binary = payload["binary"]
        if binary.get("encoding", "hex") != "hex":
            raise HermesError(f"Unsupported encoding {binary.get('encoding')!r}")
        blobs = [bytes.fromhex(d.removeprefix("0x")) for d in binary["data"]]
        if len(blobs) != 1:
            raise HermesError(f"Expected one update blob, got {len(blobs)}")
        update_data = blobs[0]

        attestations: dict[str, PriceAttestation] = {}
        for item in payload["parsed"]:
            price = item["price"]
            feed_id = normalize_feed_id(item["id"])
            attestations[feed_id] = PriceAttestation(
                feed_id=feed_id,
                price=int(price["price"]),
                conf=int(price["conf"]),
                expo=int(price["expo"]),
                publish_time=int(price["publish_time"]),
                update_data=update_data,
            )
        return attestations
    except (KeyError, TypeError, ValueError) as e:
        raise HermesError(f"Malformed price update payload: {e}") from e


class HermesClient:
    """Fetches price attestations from ranked Hermes endpoints.

    :ivar selector: Endpoint selector holding this worker's ranking.
    :ivar cache_seconds: How long REST results are reused (0 disables).
    :ivar timeout: Per-request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    DEFAULT_TIMEOUT = 2.0

    def __init__(
        self,
        selector: EndpointSelector,
        cache_seconds: float = 0,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        :param selector: Ranked endpoint selector.
        :param cache_seconds: REST response cache duration (default: 0).
        :param timeout: Request timeout in seconds (default: 2).
        :param client: Optional HTTP client; the shared client is used otherwise.
        :param clock: Monotonic clock for the response cache.
        """
        self.selector = selector
        self.cache_seconds = cache_seconds
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client
        self._clock = clock
        self._cache: dict[tuple[str, ...], tuple[float, dict[str, PriceAttestation]]] = {}

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if cls._shared_client is None or cls._shared_client.is_closed:
            cls._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(10.0, connect=5.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                follow_redirects=True,
            )
        return cls._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        if cls._shared_client is not None and not cls._shared_client.is_closed:
            await cls._shared_client.aclose()
            cls._shared_client = None

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else self.get_shared_client()

    async def fetch(
        self, feed_ids: Sequence[str], *, subscription: bool | None = None
    ) -> dict[str, PriceAttestation]:
        """Fetch attestations for every requested feed.

        By default every ranked endpoint is tried in turn, each through the
        style its mode allows: REST when permitted, the stream otherwise.

        :param feed_ids: Pyth price ids.
        :param subscription: Force streaming (True) or REST (False) endpoints
            only; None uses every endpoint in its own mode.
        :returns: Attestations keyed by normalized feed id.
        :raises EndpointFailure: If no endpoint produced a complete result.
        """
        ids = tuple(sorted({normalize_feed_id(f) for f in feed_ids}))
        if not ids:
            return {}

        if subscription is not True and self.cache_seconds > 0:
            cached = self._cache.get(ids)
            if cached is not None and self._clock() - cached[0] < self.cache_seconds:
                return dict(cached[1])

        if subscription is True:
            attempt = self._fetch_stream
        elif subscription is False:
            attempt = self._fetch_latest
        else:
            attempt = self._fetch_by_mode

        endpoint, result = await self.selector.first_usable(
            lambda e: attempt(e, ids), subscription=subscription
        )
        if subscription is not True and self.cache_seconds > 0:
            self._cache[ids] = (self._clock(), dict(result))

        logger.debug(f"[{endpoint.name}] Fetched {len(result)} price updates")
        return result

    async def _fetch_by_mode(
        self, endpoint: Endpoint, ids: tuple[str, ...]
    ) -> dict[str, PriceAttestation] | None:
        if endpoint.mode.allows_rest:
            return await self._fetch_latest(endpoint, ids)
        return await self._fetch_stream(endpoint, ids)

    async def _fetch_latest(
        self, endpoint: Endpoint, ids: tuple[str, ...]
    ) -> dict[str, PriceAttestation] | None:
        """Fetch the latest updates from one endpoint via REST.

        :returns: Complete attestations, or None if any feed is missing.
        :raises HermesHTTPError: On non-2xx response.
        :raises HermesError: On network/timeout errors or malformed payloads.
        """
        url = f"{endpoint.url}/v2/updates/price/latest"
        params = [("ids[]", i) for i in ids] + [("encoding", "hex"), ("parsed", "true")]
        try:
            response = await self.client.get(url, params=params, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise HermesError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise HermesError(f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise HermesHTTPError(response.status_code, response.text[:200])

        try:
            payload = response.json()
        except ValueError as e:
            raise HermesError(f"Invalid JSON from {endpoint.name}: {e}") from e

        attestations = parse_price_updates(payload)
        return self._complete(endpoint, ids, attestations)

    async def _fetch_stream(
        self, endpoint: Endpoint, ids: tuple[str, ...]
    ) -> dict[str, PriceAttestation] | None:
        """Read server-sent events until every requested feed has been seen.

        The caller bounds the total time through the selector deadline.
        """
        url = f"{endpoint.url}/v2/updates/price/stream"
        params = [("ids[]", i) for i in ids] + [("encoding", "hex"), ("parsed", "true")]
        collected: dict[str, PriceAttestation] = {}
        try:
            async with self.client.stream("GET", url, params=params, timeout=None) as response:
                if not response.is_success:
                    await response.aread()
                    raise HermesHTTPError(response.status_code, response.text[:200])
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        payload = json.loads(line[len("data:"):].strip())
                    except ValueError as e:
                        raise HermesError(f"Invalid event from {endpoint.name}: {e}") from e
                    collected.update(parse_price_updates(payload))
                    if all(i in collected for i in ids):
                        return {i: collected[i] for i in ids}
        except httpx.RequestError as e:
            raise HermesError(f"Stream failed: {e}") from e

        return self._complete(endpoint, ids, collected)

    @staticmethod
    def _complete(
        endpoint: Endpoint,
        ids: tuple[str, ...],
        attestations: dict[str, PriceAttestation],
    ) -> dict[str, PriceAttestation] | None:
        missing = [i for i in ids if i not in attestations]
        if missing:
            logger.warning(f"[{endpoint.name}] Missing {len(missing)} feeds: {missing}")
            return None
        return {i: attestations[i] for i in ids}
