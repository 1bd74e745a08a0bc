# src/webapp_auth_bff/auth_utils.py

import asyncio
import logging
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from urllib.parse import urlencode

import msal

from .config import Settings
from .errors import ProviderError

logger = logging.getLogger(__name__)

RESERVED_SCOPES = ("openid", "profile", "offline_access")


@dataclass
class ProviderTokenResult:
    access_token: str
    account_id: str
    username: str
    id_token: typing.Optional[str] = None
    tenant_id: typing.Optional[str] = None
    expires_in: typing.Optional[int] = None
    id_token_claims: typing.Dict[str, typing.Any] = field(default_factory=dict)
    token_cache: typing.Optional[str] = None


class IdentityProvider(ABC):
    """
    The external identity provider as seen by the flow controller and refresh manager.
    Constructed once by the application factory and injected; never module state.
    """

    @abstractmethod
    def get_authorization_url(self, state: str, code_challenge: str, code_challenge_method: str) -> str:
        ...

    @abstractmethod
    async def exchange_code_for_tokens(
            self,
            code: str,
            code_verifier: str,
            token_cache: typing.Optional[str] = None,
    ) -> ProviderTokenResult:
        ...

    @abstractmethod
    async def refresh_token_silently(
            self,
            account_id: str,
            token_cache: typing.Optional[str],
            force_refresh: bool = True,
    ) -> ProviderTokenResult:
        ...

    @abstractmethod
    def get_end_session_url(self, post_logout_redirect_uri: str) -> str:
        ...

    async def close(self) -> None:
        return None


class MsalIdentityProvider(IdentityProvider):
    """
    Microsoft Entra ID through MSAL's ConfidentialClientApplication.

    Every exchange and refresh runs against the calling session's own
    SerializableTokenCache, so a session can only ever refresh the account it signed in with.
    MSAL is synchronous; calls run in a worker thread and are bounded by PROVIDER_TIMEOUT_SECONDS.
    A timed-out call is abandoned, the thread finishes on its own and its result is discarded.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.authority = settings.BFF_AUTHORITY
        # msal adds the OIDC scopes itself and rejects them if passed in
        self.scopes = [scope for scope in settings.BFF_SCOPES if scope not in RESERVED_SCOPES]
        self.redirect_uri = str(settings.BFF_REDIRECT_URI)
        self.timeout = settings.PROVIDER_TIMEOUT_SECONDS
        # shared across per-session app instances so authority discovery is not repeated
        self._http_cache: typing.Dict[typing.Any, typing.Any] = {}

    # --- OIDC Flow Functions ---

    def get_authorization_url(self, state: str, code_challenge: str, code_challenge_method: str) -> str:
        params = {
            "client_id": self.settings.BFF_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "response_mode": "form_post",  # recommended for confidential clients
            "scope": " ".join(_with_oidc_scopes(self.scopes)),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
        }
        auth_url = f"{self.authority}/oauth2/v2.0/authorize?{urlencode(params)}"
        logger.debug("Built authorization URL. Redirect URI: %s", self.redirect_uri)
        return auth_url

    async def exchange_code_for_tokens(
            self,
            code: str,
            code_verifier: str,
            token_cache: typing.Optional[str] = None,
    ) -> ProviderTokenResult:
        cache = _load_cache(token_cache)

        def _exchange() -> typing.Tuple[dict, list]:
            app = self._build_app(cache)
            result = app.acquire_token_by_authorization_code(
                code=code,
                scopes=self.scopes,
                redirect_uri=self.redirect_uri,
                data={"code_verifier": code_verifier},
            )
            return result, app.get_accounts()

        result, accounts = await self._call(_exchange, "token exchange")
        if "error" in result:
            logger.warning("Token exchange rejected by provider: %s", result.get("error"))
            raise ProviderError(result.get("error_description") or "Token exchange failed", error=result.get("error"))

        claims = result.get("id_token_claims") or {}
        account = _select_account(accounts, claims=claims)
        if account is None:
            raise ProviderError("Token response did not identify an account", error="no_account")
        return _to_result(result, account, cache)

    async def refresh_token_silently(
            self,
            account_id: str,
            token_cache: typing.Optional[str],
            force_refresh: bool = True,
    ) -> ProviderTokenResult:
        if not token_cache:
            raise ProviderError("No token cache bound to this session", error="no_cache")
        cache = _load_cache(token_cache)

        def _refresh() -> typing.Tuple[typing.Optional[dict], typing.Optional[dict]]:
            app = self._build_app(cache)
            account = _select_account(app.get_accounts(), account_id=account_id)
            if account is None:
                return None, None
            result = app.acquire_token_silent_with_error(
                scopes=self.scopes,
                account=account,
                force_refresh=force_refresh,
            )
            return result, account

        result, account = await self._call(_refresh, "silent refresh")
        if account is None:
            raise ProviderError("Session account not found in its token cache", error="account_not_found")
        if not result:
            raise ProviderError("No refresh token available for this account", error="interaction_required")
        if "error" in result:
            logger.warning("Silent refresh rejected by provider: %s", result.get("error"))
            raise ProviderError(result.get("error_description") or "Silent refresh failed", error=result.get("error"))
        return _to_result(result, account, cache)

    def get_end_session_url(self, post_logout_redirect_uri: str) -> str:
        query = urlencode({"post_logout_redirect_uri": post_logout_redirect_uri})
        return f"{self.authority}/oauth2/v2.0/logout?{query}"

    # --- Internals ---

    def _build_app(self, cache: msal.SerializableTokenCache) -> msal.ConfidentialClientApplication:
        return msal.ConfidentialClientApplication(
            client_id=self.settings.BFF_CLIENT_ID,
            authority=self.authority,
            client_credential=self.settings.BFF_CLIENT_SECRET,
            token_cache=cache,
            http_cache=self._http_cache,
            timeout=self.timeout,
        )

    async def _call(self, func, what: str):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Provider %s timed out after %.1fs", what, self.timeout)
            raise ProviderError(f"Provider {what} timed out", error="timeout") from exc
        except ProviderError:
            raise
        except Exception as exc:
            # msal surfaces transport failures as requests exceptions or ValueError
            logger.warning("Provider %s failed: %s", what, type(exc).__name__)
            raise ProviderError(f"Provider {what} failed", error="unavailable") from exc


def _with_oidc_scopes(scopes: typing.List[str]) -> typing.List[str]:
    return list(RESERVED_SCOPES) + [scope for scope in scopes if scope not in RESERVED_SCOPES]


def _load_cache(serialized: typing.Optional[str]) -> msal.SerializableTokenCache:
    cache = msal.SerializableTokenCache()
    if serialized:
        cache.deserialize(serialized)
    return cache


def _select_account(
        accounts: typing.List[dict],
        account_id: typing.Optional[str] = None,
        claims: typing.Optional[dict] = None,
) -> typing.Optional[dict]:
    if account_id is not None:
        return next((a for a in accounts if a.get("home_account_id") == account_id), None)
    oid = (claims or {}).get("oid")
    for account in accounts:
        if oid and account.get("local_account_id") == oid:
            return account
    # a per-session cache holds exactly the account that just signed in
    return accounts[0] if len(accounts) == 1 else None


def _to_result(result: dict, account: dict, cache: msal.SerializableTokenCache) -> ProviderTokenResult:
    if not result.get("access_token"):
        raise ProviderError("Token response did not include an access token", error="no_access_token")
    claims = result.get("id_token_claims") or {}
    return ProviderTokenResult(
        access_token=result["access_token"],
        id_token=result.get("id_token"),
        account_id=account["home_account_id"],
        username=account.get("username") or claims.get("preferred_username", ""),
        tenant_id=account.get("realm") or claims.get("tid"),
        expires_in=result.get("expires_in"),
        id_token_claims=claims,
        token_cache=cache.serialize(),
    )
