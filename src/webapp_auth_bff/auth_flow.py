# src/webapp_auth_bff/auth_flow.py
"""
Authorization code + PKCE handshake: sign-in redirect, provider callback, sign-out.

Callback states run strictly in order, and nothing after a failure executes:

    AwaitingCallback -> Validating -> Exchanging -> Authenticated
                             \\             \\
                              +-> Failed     +-> Failed

The pending flow is consumed before validation starts, so it can never be replayed,
whatever the outcome.
"""

import hmac
import logging
import time
import typing
from dataclasses import dataclass
from urllib.parse import urlsplit

from .auth_utils import IdentityProvider, ProviderTokenResult
from .config import Settings
from .errors import (
    CsrfMismatchError,
    ExpiredOrMissingFlowError,
    MissingStateError,
    ProviderError,
    ProviderUnavailableError,
    TokenExchangeError,
)
from .pkce import decode_state, encode_state, generate_challenge_pair, generate_csrf_token
from .session_data import Identity, PendingFlow, TokenSet
from .sessions import SessionHandle, SessionLocks, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class CallbackParams:
    """Form fields the provider posts back to the redirect URI."""
    code: typing.Optional[str] = None
    state: typing.Optional[str] = None
    error: typing.Optional[str] = None
    error_description: typing.Optional[str] = None


def safe_redirect_path(target: typing.Any, default: str = "/") -> str:
    """Only same-origin absolute paths are acceptable post-login targets."""
    if not isinstance(target, str) or not target.startswith("/") or target.startswith("//"):
        return default
    if "\\" in target:
        return default
    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return default
    return target


class AuthFlowController:
    def __init__(
            self,
            provider: IdentityProvider,
            store: SessionStore,
            locks: SessionLocks,
            settings: Settings,
            clock: typing.Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.store = store
        self.locks = locks
        self.settings = settings
        self.clock = clock

    # --- Sign-in ---

    def initiate_sign_in(self, handle: SessionHandle, desired_post_login_path: typing.Optional[str] = None) -> str:
        """
        Starts a new flow for this session and returns the provider URL to redirect to.
        Any earlier pending flow is replaced; its verifier is never used again.
        """
        target = safe_redirect_path(desired_post_login_path, default=self.settings.DEFAULT_POST_LOGIN_PATH)
        pair = generate_challenge_pair()
        csrf_token = generate_csrf_token()
        state = encode_state({"csrfToken": csrf_token, "redirectTo": target})

        try:
            auth_url = self.provider.get_authorization_url(
                state=state,
                code_challenge=pair.challenge,
                code_challenge_method=pair.method,
            )
        except Exception as exc:
            logger.error("Could not build authorization URL: %s", type(exc).__name__)
            raise ProviderUnavailableError() from exc

        handle.data.pending_flow = PendingFlow(
            verifier=pair.verifier,
            challenge_method=pair.method,
            challenge=pair.challenge,
            csrf_token=csrf_token,
            expected_redirect_target=target,
            created_at=self.clock(),
        )
        handle.data.return_to = None
        logger.info("Sign-in started. Post-login target: %s", target)
        return auth_url

    # --- Callback ---

    async def handle_callback(self, handle: SessionHandle, params: CallbackParams) -> str:
        """
        Validates and exchanges the provider response.
        Returns the post-login path on success; raises an AuthError subclass otherwise.
        """
        pending = await self._consume_pending_flow(handle)

        # Validating
        if not params.state:
            logger.info("Callback rejected: missing state")
            raise MissingStateError()
        if pending is None:
            logger.info("Callback rejected: no pending sign-in for this session")
            raise ExpiredOrMissingFlowError()
        if self.clock() - pending.created_at > self.settings.PENDING_FLOW_MAX_AGE_SECONDS:
            logger.info("Callback rejected: pending sign-in expired")
            raise ExpiredOrMissingFlowError()
        payload = decode_state(params.state)
        csrf_token = payload.get("csrfToken")
        if not isinstance(csrf_token, str) or not hmac.compare_digest(csrf_token, pending.csrf_token):
            logger.warning("Callback rejected: CSRF token mismatch")
            raise CsrfMismatchError()

        # Exchanging
        if params.error:
            logger.warning("Provider returned an error instead of a code: %s (%s)",
                           params.error, params.error_description or "no description")
            raise TokenExchangeError()
        if not params.code:
            logger.warning("Provider response carried no authorization code")
            raise TokenExchangeError()
        try:
            result = await self.provider.exchange_code_for_tokens(
                code=params.code,
                code_verifier=pending.verifier,
                token_cache=None,
            )
        except ProviderError as exc:
            logger.warning("Token exchange failed: %s", exc.error or exc)
            raise TokenExchangeError() from exc

        # Authenticated
        handle.data.sign_in(
            identity=identity_from_result(result),
            tokens=tokens_from_result(result, now=self.clock()),
            token_cache=result.token_cache,
        )
        handle.data.return_to = None
        handle.rotate()
        logger.info("User '%s' signed in", result.username)
        return safe_redirect_path(payload.get("redirectTo"), default=pending.expected_redirect_target)

    async def _consume_pending_flow(self, handle: SessionHandle) -> typing.Optional[PendingFlow]:
        """Atomically takes the pending flow out of the stored session."""
        handle.data.pending_flow = None
        if handle.is_new:
            return None
        async with self.locks.get(handle.session_id):
            stored = await self.store.load(handle.session_id)
            if stored is None or stored.pending_flow is None:
                return None
            pending = stored.pending_flow
            stored.pending_flow = None
            await self.store.save(handle.session_id, stored, ttl=self.settings.SESSION_COOKIE_MAX_AGE)
        handle.original.pending_flow = None
        return pending

    # --- Sign-out ---

    async def sign_out(self, handle: SessionHandle) -> str:
        """Destroys the session, anonymous or not, and returns the provider end-session URL."""
        had_identity = handle.data.identity is not None
        if not handle.is_new:
            await self.store.delete(handle.session_id)
            self.locks.discard(handle.session_id)
        handle.destroy()
        logger.info("Session signed out (was authenticated: %s)", had_identity)
        return self.provider.get_end_session_url(str(self.settings.BFF_POST_LOGOUT_REDIRECT_URI))


# --- Mapping provider results into session records ---

def identity_from_result(result: ProviderTokenResult) -> Identity:
    claims = dict(result.id_token_claims or {})
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return Identity(
        account_id=result.account_id,
        username=result.username or claims.get("preferred_username", ""),
        tenant_id=result.tenant_id or claims.get("tid"),
        claims=claims,
        roles=[str(role) for role in roles],
    )


def tokens_from_result(result: ProviderTokenResult, now: float, previous: typing.Optional[TokenSet] = None) -> TokenSet:
    return TokenSet(
        access_token=result.access_token,
        id_token=result.id_token or (previous.id_token if previous else None),
        expires_at=now + result.expires_in if result.expires_in else None,
        last_refreshed_at=now,
    )
