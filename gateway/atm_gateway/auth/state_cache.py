"""
OAuth State Cache

In-memory TTL cache of pending authorization requests, keyed by the OAuth
``state`` value. It is a secondary channel next to the server-side session:
when the session cookie does not survive the round trip to the identity
provider (cross-site cookie rules), the callback can still find its nonce here.

Entries expire after ``ttl_seconds``. Expired entries are purged on every
lookup and by a periodic sweep task owned by the cache.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from ..models import AuthorizationRequest

logger = logging.getLogger(__name__)


class StateCache:
    """
    TTL cache of AuthorizationRequest entries.

    All reads, writes and the sweep take the same asyncio.Lock.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        sweep_interval_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the state cache.

        Args:
            ttl_seconds: Lifetime of an entry (default: 5 minutes)
            sweep_interval_seconds: Interval between background sweeps (default: 10 minutes)
            clock: Time source, seconds since the epoch
        """
        self._cache: Dict[str, AuthorizationRequest] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._ttl_seconds = ttl_seconds
        self._sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def lock(self) -> asyncio.Lock:
        # Created on first use so it belongs to the serving event loop.
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Schedule the periodic sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="state-cache-sweep")
            logger.info(
                "State cache started",
                extra={"ttl_seconds": self._ttl_seconds, "sweep_seconds": self._sweep_interval_seconds},
            )

    async def stop(self) -> None:
        """Cancel the sweep and drop every entry."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        async with self.lock:
            self._cache.clear()
        logger.info("State cache stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            removed = await self.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired OAuth state entries")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def put(self, state: str, nonce: str) -> AuthorizationRequest:
        """
        Store a pending authorization request.

        Args:
            state: OAuth state value (cache key)
            nonce: Nonce bound to the same login attempt

        Returns:
            The stored entry
        """
        entry = AuthorizationRequest(state=state, nonce=nonce, created_at=self._clock())
        async with self.lock:
            self._cache[state] = entry
            size = len(self._cache)
        logger.debug("Stored OAuth state", extra={"cache_size": size})
        return entry

    async def get(self, state: str) -> Optional[AuthorizationRequest]:
        """
        Look up a pending authorization request.

        Expired entries are removed before the lookup.

        Returns:
            The entry if present and unexpired, None otherwise
        """
        async with self.lock:
            self._purge_expired()
            return self._cache.get(state)

    async def delete(self, state: str) -> bool:
        """
        Remove an entry. Deleting a missing key is a no-op.

        Returns:
            True if an entry was removed
        """
        async with self.lock:
            return self._cache.pop(state, None) is not None

    async def sweep(self) -> int:
        """
        Remove expired entries now.

        Returns:
            Number of entries removed
        """
        async with self.lock:
            return self._purge_expired()

    def _purge_expired(self) -> int:
        # Caller holds the lock.
        cutoff = self._clock() - self._ttl_seconds
        expired_keys = [key for key, entry in self._cache.items() if entry.created_at <= cutoff]
        for key in expired_keys:
            del self._cache[key]
        return len(expired_keys)
