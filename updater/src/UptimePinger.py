"""UptimePinger: Periodic liveness ping to an external uptime monitor.

Runs on its own fixed cadence, independent of update activity. A failed
ping is logged and never stops the worker.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class UptimePinger:
    """Calls an uptime webhook every ``interval`` seconds.

    :ivar url: Webhook URL.
    :ivar interval: Seconds between pings.
    """

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        url: str,
        interval: float = 60.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the pinger.

        :param url: Webhook URL to GET.
        :param interval: Seconds between pings (default: 60).
        :param client: Optional HTTP client; one is created otherwise.
        :param sleep: Async sleep function.
        """
        self.url = url
        self.interval = interval
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def ping(self) -> bool:
        """Send one ping.

        :returns: True if the webhook answered with a 2xx status.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.DEFAULT_TIMEOUT)
        try:
            response = await self._client.get(self.url)
        except httpx.HTTPError as e:
            logger.warning(f"Uptime ping failed: {e}")
            return False
        if not response.is_success:
            logger.warning(f"Uptime ping returned HTTP {response.status_code}")
            return False
        logger.debug("Uptime ping sent")
        return True

    async def run(self) -> None:
        """Ping forever at a fixed cadence."""
        logger.info(f"Uptime pings every {self.interval:.0f}s")
        try:
            while True:
                await self.ping()
                await self._sleep(self.interval)
        finally:
            await self.close()

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
