"""
Keep-alive pinger.

Free-tier hosts put idle services to sleep. When KEEPALIVE_URL is set, a
background task GETs it on a fixed interval. Failures are logged; they never
stop the loop.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class KeepAlivePinger:
    """Periodically pings a URL from a background task."""

    def __init__(
        self,
        url: str,
        interval_seconds: float = 840,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.interval_seconds = interval_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._task: Optional[asyncio.Task] = None

    async def ping(self) -> bool:
        """
        Ping the URL once.

        Returns:
            True if the server answered 200
        """
        logger.info("Pinging server to keep it alive...")
        try:
            response = await self._http.get(self.url)
        except httpx.HTTPError as e:
            logger.error(f"Error during ping: {str(e) or type(e).__name__}")
            return False

        if response.status_code == 200:
            logger.info("Server responded OK")
            return True

        logger.error(f"Failed to ping server. Status code: {response.status_code}")
        return False

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="keepalive")
            logger.info(
                "Keep-alive pinger started",
                extra={"url": self.url, "interval_seconds": self.interval_seconds},
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client:
            await self._http.aclose()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.ping()
