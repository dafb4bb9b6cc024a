"""
Server-side session store.

Cookies carry only an opaque session id; the SessionRecord (pending OAuth
state/nonce, captured identity) stays in process memory. Sessions expire after
``max_age_seconds`` without activity; every access slides the window.
"""

import asyncio
import logging
import secrets
import time
from typing import Callable, Dict, Optional

from fastapi import Request

from ..config import Settings
from ..models import SessionRecord

logger = logging.getLogger(__name__)


class SessionStore:
    """
    In-memory session store with a sliding expiry window.

    Records enter the store only through ``create()``. ``save()`` and
    ``touch()`` update records that still exist; they never bring back a
    session that ``destroy()`` removed.
    """

    def __init__(self, max_age_seconds: int = 86400, clock: Callable[[], float] = time.time):
        self._data: Dict[str, SessionRecord] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._max_age_seconds = max_age_seconds
        self._clock = clock

    def __len__(self) -> int:
        return len(self._data)

    @property
    def lock(self) -> asyncio.Lock:
        # Created on first use so it belongs to the serving event loop.
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def create(self) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(session_id=secrets.token_urlsafe(32), created_at=now, last_seen=now)
        async with self.lock:
            self._purge_expired()
            self._data[record.session_id] = record.model_copy()
        return record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """
        Load a session and refresh its expiry.

        Returns:
            A copy of the record, or None if unknown or expired
        """
        async with self.lock:
            record = self._data.get(session_id)
            if record is None:
                return None
            now = self._clock()
            if now - record.last_seen > self._max_age_seconds:
                del self._data[session_id]
                return None
            record.last_seen = now
            return record.model_copy()

    async def save(self, record: SessionRecord) -> bool:
        """
        Write back a modified record.

        Returns:
            False if the session no longer exists (destroyed or expired)
        """
        async with self.lock:
            if record.session_id not in self._data:
                return False
            record.last_seen = self._clock()
            self._data[record.session_id] = record.model_copy()
            return True

    async def touch(self, session_id: str) -> bool:
        """
        Refresh the expiry of an existing session without changing its data.

        Returns:
            False if the session no longer exists
        """
        async with self.lock:
            record = self._data.get(session_id)
            if record is None:
                return False
            record.last_seen = self._clock()
            return True

    async def destroy(self, session_id: str) -> None:
        async with self.lock:
            self._data.pop(session_id, None)

    def _purge_expired(self) -> int:
        # Caller holds the lock.
        cutoff = self._clock() - self._max_age_seconds
        expired = [sid for sid, rec in self._data.items() if rec.last_seen < cutoff]
        for sid in expired:
            del self._data[sid]
        return len(expired)


# =============================================================================
# Request helpers
# =============================================================================

def get_session(request: Request) -> Optional[SessionRecord]:
    """Session bound to this request by the middleware, if any."""
    return getattr(request.state, "session", None)


async def ensure_session(request: Request) -> SessionRecord:
    """
    Return the request's session for writing, creating one if the browser has
    none yet. The record is written back to the store after the handler runs.
    """
    record = get_session(request)
    if record is None:
        store: SessionStore = request.app.state.session_store
        record = await store.create()
        request.state.session = record
        request.state.session_destroyed = False
    request.state.session_modified = True
    return record


async def destroy_session(request: Request) -> None:
    """Delete the request's session server-side and expire its cookie."""
    record = get_session(request)
    if record is not None:
        store: SessionStore = request.app.state.session_store
        await store.destroy(record.session_id)
    request.state.session = None
    request.state.session_destroyed = True


# =============================================================================
# HTTP middleware (registered by main.py via app.middleware)
# =============================================================================

async def session_middleware(request: Request, call_next):
    """
    Bind the SessionRecord named by the session cookie to ``request.state.session``.

    After the handler runs, a session obtained through ``ensure_session`` is
    written back; any other live session only has its expiry refreshed. The
    cookie is re-issued while the session exists and deleted once it is gone.
    """
    store: SessionStore = request.app.state.session_store
    settings: Settings = request.app.state.settings

    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    request.state.session = await store.get(session_id) if session_id else None
    request.state.session_destroyed = False
    request.state.session_modified = False

    response = await call_next(request)

    record = get_session(request)
    if request.state.session_destroyed:
        response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
        return response

    if record is not None:
        if request.state.session_modified:
            alive = await store.save(record)
        else:
            alive = await store.touch(record.session_id)
        if alive:
            response.set_cookie(
                settings.SESSION_COOKIE_NAME,
                record.session_id,
                max_age=settings.SESSION_MAX_AGE_SECONDS,
                httponly=True,
                secure=settings.SESSION_COOKIE_SECURE,
                samesite=settings.SESSION_COOKIE_SAMESITE,
                path="/",
            )
            return response
        logger.info("Session ended while request was in flight", extra={"path": request.url.path})

    if session_id:
        # Unknown, expired or concurrently destroyed session; drop the cookie.
        response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")

    return response
