# src/webapp_auth_bff/sessions.py

import asyncio
import logging
import time
import typing
import uuid
import weakref
from abc import ABC, abstractmethod

from fastapi import Request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import Settings
from .session_data import SessionData

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS = 60


# --- Session Store ---

class SessionStore(ABC):
    """Server-side session backend, addressed per session ID."""

    @abstractmethod
    async def load(self, session_id: str) -> typing.Optional[SessionData]:
        ...

    @abstractmethod
    async def save(self, session_id: str, data: SessionData, ttl: int) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...


class MemorySessionStore(SessionStore):
    """
    In-process store for development and tests.
    Records are kept serialized so every request works on its own copy,
    as it would against a networked backend.
    """

    def __init__(
            self,
            clock: typing.Callable[[], float] = time.time,
            eviction_interval: float = EVICTION_INTERVAL_SECONDS,
    ):
        self._records: typing.Dict[str, typing.Tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._eviction_interval = eviction_interval
        self._next_eviction = clock() + eviction_interval

    async def load(self, session_id: str) -> typing.Optional[SessionData]:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            payload, expires_at = record
            if expires_at <= self._clock():
                del self._records[session_id]
                return None
            return SessionData.model_validate_json(payload)

    async def save(self, session_id: str, data: SessionData, ttl: int) -> None:
        async with self._lock:
            now = self._clock()
            # expired records are dropped on load; the sweep only catches abandoned ones
            if now >= self._next_eviction:
                self._evict_expired(now)
                self._next_eviction = now + self._eviction_interval
            self._records[session_id] = (data.model_dump_json(), now + ttl)

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._records.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._records)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._records.items() if expires_at <= now]
        for key in expired:
            del self._records[key]


# --- Per-session locking ---

class SessionLocks:
    """One asyncio.Lock per session ID; unused locks are garbage collected."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def discard(self, session_id: str) -> None:
        self._locks.pop(session_id, None)


# --- Request-scoped handle ---

def new_session_id() -> str:
    return str(uuid.uuid4())


class SessionHandle:
    """The session as seen by one request, plus the snapshot it was loaded from."""

    def __init__(self, session_id: str, data: SessionData, is_new: bool):
        self.session_id = session_id
        self.data = data
        self.original = data.model_copy(deep=True)
        self.is_new = is_new
        self.destroyed = False
        self.previous_id: typing.Optional[str] = None
        # set when a component saved the record itself (token refresh); the cookie is re-issued
        self.written_through = False

    def destroy(self) -> None:
        self.destroyed = True
        self.data = SessionData()

    def rotate(self) -> None:
        """Issue a fresh session ID; the old record is removed when the response is written."""
        if self.previous_id is None and not self.is_new:
            self.previous_id = self.session_id
        self.session_id = new_session_id()

    def changed_fields(self) -> typing.Dict[str, typing.Any]:
        return {
            name: getattr(self.data, name)
            for name in SessionData.model_fields
            if getattr(self.data, name) != getattr(self.original, name)
        }

    def mark_persisted(self) -> None:
        self.original = self.data.model_copy(deep=True)


def merge_changes(current: SessionData, changes: typing.Dict[str, typing.Any]) -> SessionData:
    """
    Apply one request's changes on top of the stored record.
    Fields the request did not touch keep their stored value, and a token set is
    only written if it is at least as recent as the stored one.
    """
    changes = dict(changes)
    new_tokens = changes.get("tokens")
    if (
        new_tokens is not None
        and current.tokens is not None
        and current.tokens.last_refreshed_at > new_tokens.last_refreshed_at
    ):
        changes.pop("tokens")
        changes.pop("token_cache", None)
    merged = current.model_dump()
    merged.update({key: value.model_dump() if hasattr(value, "model_dump") else value
                   for key, value in changes.items()})
    if merged.get("authenticated") and (merged.get("identity") is None or merged.get("tokens") is None):
        merged["authenticated"] = False
    return SessionData.model_validate(merged)


async def persist_session(
        store: SessionStore,
        locks: SessionLocks,
        handle: SessionHandle,
        ttl: int,
) -> bool:
    """Write the handle's changes back to the store. Returns False if there was nothing to write."""
    if handle.previous_id is not None or handle.is_new:
        if handle.data.is_empty():
            return False
        await store.save(handle.session_id, handle.data, ttl)
        handle.mark_persisted()
        return True

    changes = handle.changed_fields()
    if not changes:
        return False
    async with locks.get(handle.session_id):
        current = await store.load(handle.session_id)
        if current is None:
            # expired or signed out by a concurrent request
            current = SessionData()
        handle.data = merge_changes(current, changes)
        await store.save(handle.session_id, handle.data, ttl)
    handle.mark_persisted()
    return True


# --- Middleware ---

class SessionMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, store: SessionStore, locks: SessionLocks, settings: Settings):
        super().__init__(app)
        self.store = store
        self.locks = locks
        self.settings = settings
        self.serializer = URLSafeTimedSerializer(settings.SESSION_SECRET_KEY, salt="session-id")

    def _read_session_id(self, request: Request) -> typing.Optional[str]:
        cookie = request.cookies.get(self.settings.SESSION_COOKIE_NAME)
        if not cookie:
            return None
        try:
            return self.serializer.loads(cookie, max_age=self.settings.SESSION_COOKIE_MAX_AGE)
        except BadSignature:
            logger.info("Ignoring session cookie with an invalid or expired signature")
            return None

    async def dispatch(self, request, call_next):
        session_id = self._read_session_id(request)
        data = await self.store.load(session_id) if session_id else None
        if data is None:
            handle = SessionHandle(new_session_id(), SessionData(), is_new=True)
        else:
            handle = SessionHandle(session_id, data, is_new=False)
        request.state.session = handle

        response: StarletteResponse = await call_next(request)

        if handle.destroyed:
            response.delete_cookie(
                self.settings.SESSION_COOKIE_NAME,
                path="/",
                secure=self.settings.SESSION_COOKIE_SECURE,
                httponly=True,
                samesite=self.settings.SESSION_COOKIE_SAMESITE,
            )
            return response

        if handle.previous_id is not None:
            await self.store.delete(handle.previous_id)
            self.locks.discard(handle.previous_id)

        written = await persist_session(
            self.store, self.locks, handle, ttl=self.settings.SESSION_COOKIE_MAX_AGE
        )
        if written or handle.previous_id is not None or handle.written_through:
            response.set_cookie(
                self.settings.SESSION_COOKIE_NAME,
                self.serializer.dumps(handle.session_id),
                max_age=self.settings.SESSION_COOKIE_MAX_AGE,
                path="/",
                httponly=True,
                secure=self.settings.SESSION_COOKIE_SECURE,
                samesite=self.settings.SESSION_COOKIE_SAMESITE,
            )
        return response


def get_session(request: Request) -> SessionHandle:
    return request.state.session
