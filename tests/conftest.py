import asyncio
import typing
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest
from fastapi.testclient import TestClient

from webapp_auth_bff.auth_utils import IdentityProvider, ProviderTokenResult
from webapp_auth_bff.config import Settings
from webapp_auth_bff.errors import ProviderError
from webapp_auth_bff.main import create_app
from webapp_auth_bff.sessions import MemorySessionStore, SessionLocks

TENANT_ID = "72f988bf-86f1-41af-91ab-2d7cd011db47"
ACCOUNT_ID = "oid-1234." + TENANT_ID
USERNAME = "alice@example.com"
AUTHORIZE_URL = "https://login.example.com/authorize"
LOGOUT_URL = "https://login.example.com/logout"
T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityProvider(IdentityProvider):
    """Records every call; set *_error to make the next calls fail."""

    def __init__(self):
        self.authorization_requests: typing.List[dict] = []
        self.exchanges: typing.List[dict] = []
        self.refreshes: typing.List[dict] = []
        self.exchange_error: typing.Optional[Exception] = None
        self.refresh_error: typing.Optional[Exception] = None
        self.authorization_error: typing.Optional[Exception] = None
        self.refresh_delay = 0.0
        self.closed = False

    def get_authorization_url(self, state, code_challenge, code_challenge_method):
        if self.authorization_error is not None:
            raise self.authorization_error
        self.authorization_requests.append(
            {"state": state, "code_challenge": code_challenge, "code_challenge_method": code_challenge_method}
        )
        query = urlencode({
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
        })
        return f"{AUTHORIZE_URL}?{query}"

    async def exchange_code_for_tokens(self, code, code_verifier, token_cache=None):
        self.exchanges.append({"code": code, "code_verifier": code_verifier})
        if self.exchange_error is not None:
            raise self.exchange_error
        return self._result("access-0", cache="cache-0")

    async def refresh_token_silently(self, account_id, token_cache, force_refresh=True):
        self.refreshes.append({"account_id": account_id, "token_cache": token_cache, "force_refresh": force_refresh})
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        n = len(self.refreshes)
        return self._result(f"access-{n}", cache=f"cache-{n}")

    def get_end_session_url(self, post_logout_redirect_uri):
        return f"{LOGOUT_URL}?{urlencode({'post_logout_redirect_uri': post_logout_redirect_uri})}"

    async def close(self):
        self.closed = True

    @staticmethod
    def _result(access_token: str, cache: str) -> ProviderTokenResult:
        return ProviderTokenResult(
            access_token=access_token,
            account_id=ACCOUNT_ID,
            username=USERNAME,
            id_token="id-token",
            tenant_id=TENANT_ID,
            expires_in=3600,
            id_token_claims={
                "oid": "oid-1234",
                "tid": TENANT_ID,
                "preferred_username": USERNAME,
                "roles": ["Reports.Read"],
            },
            token_cache=cache,
        )


def make_settings(**overrides) -> Settings:
    values = dict(
        BFF_TENANT_ID=TENANT_ID,
        BFF_CLIENT_ID="client-abc",
        BFF_CLIENT_SECRET="client-secret",
        BFF_REDIRECT_URI="https://app.example.com/auth/redirect",
        BFF_POST_LOGOUT_REDIRECT_URI="https://app.example.com/",
        SESSION_SECRET_KEY="k" * 48,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def state_from_url(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


def rejected_grant() -> ProviderError:
    return ProviderError("AADSTS70000: refresh token revoked", error="invalid_grant")


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def store(clock) -> MemorySessionStore:
    return MemorySessionStore(clock=clock)


@pytest.fixture
def locks() -> SessionLocks:
    return SessionLocks()


@pytest.fixture
def app(settings, provider, store, clock):
    return create_app(settings=settings, provider=provider, session_store=store, clock=clock)


@pytest.fixture
def client(app):
    # https so the Secure session cookie is sent back
    with TestClient(app, base_url="https://testserver", follow_redirects=False) as test_client:
        yield test_client


def sign_in(client: TestClient, code: str = "auth-code"):
    """Runs the browser side of the handshake and returns the callback response."""
    response = client.get("/auth/signin")
    assert response.status_code == 302
    state = state_from_url(response.headers["location"])
    return client.post("/auth/redirect", data={"code": code, "state": state})
