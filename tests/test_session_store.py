import pytest
from conftest import T0, sign_in
from itsdangerous import URLSafeTimedSerializer
from pydantic import ValidationError

from webapp_auth_bff.session_data import Identity, SessionData, TokenSet
from webapp_auth_bff.sessions import EVICTION_INTERVAL_SECONDS, SessionHandle, merge_changes, persist_session

TTL = 3600


def authenticated_session(refreshed_at: float = T0, access_token: str = "access-0") -> SessionData:
    session = SessionData()
    session.sign_in(
        identity=Identity(account_id="acct-1", username="alice@example.com", tenant_id="t1"),
        tokens=TokenSet(access_token=access_token, last_refreshed_at=refreshed_at),
        token_cache="cache",
    )
    return session


# --- SessionData ---

def test_authenticated_requires_identity_and_tokens():
    with pytest.raises(ValidationError):
        SessionData(authenticated=True)
    session = SessionData()
    with pytest.raises(ValidationError):
        session.authenticated = True


def test_invalidate_keeps_records_but_clears_flag():
    session = authenticated_session()
    session.invalidate()
    assert session.authenticated is False
    assert session.identity.username == "alice@example.com"


def test_is_empty():
    assert SessionData().is_empty()
    assert not SessionData(return_to="/users/id").is_empty()


# --- MemorySessionStore ---

async def test_store_returns_independent_copies(store):
    await store.save("sid", authenticated_session(), ttl=TTL)
    first = await store.load("sid")
    first.invalidate()
    second = await store.load("sid")
    assert second.authenticated is True


async def test_store_expires_records(store, clock):
    await store.save("sid", SessionData(return_to="/"), ttl=TTL)
    clock.advance(TTL - 1)
    assert await store.load("sid") is not None
    clock.advance(1)
    assert await store.load("sid") is None
    assert len(store) == 0


async def test_store_sweeps_abandoned_records_at_intervals(store, clock):
    await store.save("abandoned", SessionData(return_to="/"), ttl=10)
    clock.advance(30)
    await store.save("live", SessionData(return_to="/"), ttl=TTL)
    # expired but not yet swept
    assert len(store) == 2

    clock.advance(EVICTION_INTERVAL_SECONDS)
    await store.save("live", SessionData(return_to="/"), ttl=TTL)
    assert len(store) == 1
    assert await store.load("live") is not None


async def test_store_delete_is_idempotent(store):
    await store.save("sid", SessionData(return_to="/"), ttl=TTL)
    await store.delete("sid")
    await store.delete("sid")
    assert await store.load("sid") is None


# --- Locks ---

def test_session_locks_are_per_session(locks):
    lock_a = locks.get("a")
    assert locks.get("a") is lock_a
    assert locks.get("b") is not lock_a


# --- Merging ---

def test_merge_never_regresses_tokens():
    stored = authenticated_session(refreshed_at=T0 + 100, access_token="newer")
    stale = TokenSet(access_token="older", last_refreshed_at=T0)
    merged = merge_changes(stored, {"tokens": stale, "token_cache": "stale-cache", "return_to": "/x"})
    assert merged.tokens.access_token == "newer"
    assert merged.token_cache == "cache"
    assert merged.return_to == "/x"


def test_merge_accepts_newer_tokens():
    stored = authenticated_session(refreshed_at=T0)
    fresh = TokenSet(access_token="fresh", last_refreshed_at=T0 + 1)
    merged = merge_changes(stored, {"tokens": fresh})
    assert merged.tokens.access_token == "fresh"
    assert merged.authenticated is True


def test_merge_onto_missing_record_cannot_authenticate():
    merged = merge_changes(SessionData(), {"authenticated": True, "return_to": "/x"})
    assert merged.authenticated is False
    assert merged.return_to == "/x"


# --- Persisting ---

async def test_empty_new_session_is_not_written(store, locks):
    handle = SessionHandle("sid", SessionData(), is_new=True)
    assert await persist_session(store, locks, handle, ttl=TTL) is False
    assert len(store) == 0


async def test_unchanged_session_is_not_written(store, locks):
    await store.save("sid", SessionData(return_to="/a"), ttl=TTL)
    handle = SessionHandle("sid", await store.load("sid"), is_new=False)
    assert await persist_session(store, locks, handle, ttl=TTL) is False


async def test_invalidation_by_another_request_sticks(store, locks):
    await store.save("sid", authenticated_session(), ttl=TTL)
    slow = SessionHandle("sid", await store.load("sid"), is_new=False)
    fast = SessionHandle("sid", await store.load("sid"), is_new=False)

    fast.data.invalidate()
    await persist_session(store, locks, fast, ttl=TTL)
    slow.data.return_to = "/users/id"
    await persist_session(store, locks, slow, ttl=TTL)

    stored = await store.load("sid")
    assert stored.authenticated is False
    assert stored.return_to == "/users/id"


async def test_rotated_session_is_saved_under_new_id(store, locks):
    await store.save("old", SessionData(return_to="/a"), ttl=TTL)
    handle = SessionHandle("old", await store.load("old"), is_new=False)
    handle.rotate()
    assert handle.previous_id == "old"
    assert handle.session_id != "old"
    assert await persist_session(store, locks, handle, ttl=TTL) is True
    assert (await store.load(handle.session_id)).return_to == "/a"


# --- Cookie ---

def test_public_request_sets_no_cookie(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert "set-cookie" not in response.headers


def test_session_cookie_attributes(client):
    response = client.get("/auth/signin")
    cookie = response.headers["set-cookie"].lower()
    assert cookie.startswith("session_id=")
    assert "httponly" in cookie
    assert "secure" in cookie
    assert "samesite=none" in cookie
    assert "path=/" in cookie


def test_cookie_signed_with_another_key_is_ignored(client, settings):
    sign_in(client)
    assert client.get("/v2/profile").status_code == 200

    genuine = URLSafeTimedSerializer(settings.SESSION_SECRET_KEY, salt="session-id")
    forger = URLSafeTimedSerializer("f" * 48, salt="session-id")
    for cookie in client.cookies.jar:
        cookie.value = forger.dumps(genuine.loads(cookie.value))

    response = client.get("/v2/profile")
    assert response.status_code == 401
    assert response.json()["name"] == "NotAuthenticatedError"
