# src/webapp_auth_bff/token_refresh.py

import logging
import time
import typing

from .auth_flow import tokens_from_result
from .auth_utils import IdentityProvider
from .config import Settings
from .errors import NotAuthenticatedError, ProviderError, RefreshError
from .session_data import SessionData, TokenSet
from .sessions import SessionHandle, SessionLocks, SessionStore

logger = logging.getLogger(__name__)


class TokenRefreshManager:
    """
    Decides whether a session's cached access token can be reused or must be refreshed.

    Within REFRESH_COOLDOWN of the last successful refresh, a cached token is returned
    without a network call. Past it, exactly one forced silent refresh is attempted per
    request; concurrent requests for the same session wait on the session lock and pick
    up the result instead of refreshing again.
    """

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
        self.cooldown = settings.TOKEN_REFRESH_COOLDOWN_SECONDS
        self.ttl = settings.SESSION_COOKIE_MAX_AGE
        self.clock = clock

    def is_within_cooldown(self, session: SessionData) -> bool:
        tokens = session.tokens
        if not session.authenticated or tokens is None or not tokens.access_token:
            return False
        return self.clock() - tokens.last_refreshed_at < self.cooldown

    async def ensure_fresh_token(self, handle: SessionHandle) -> TokenSet:
        session = handle.data
        if session.identity is None or session.tokens is None or not session.authenticated:
            raise NotAuthenticatedError()

        if self.is_within_cooldown(session):
            logger.debug("Reusing cached access token (within refresh cooldown)")
            return session.tokens

        async with self.locks.get(handle.session_id):
            stored = await self.store.load(handle.session_id)
            if stored is None or not stored.authenticated or stored.identity is None:
                # signed out, or a concurrent refresh already failed
                self._invalidate(handle)
                raise RefreshError()
            if stored.identity.account_id != session.identity.account_id:
                self._invalidate(handle)
                raise RefreshError()
            if stored.tokens.last_refreshed_at > session.tokens.last_refreshed_at:
                session.tokens = stored.tokens
                session.token_cache = stored.token_cache
                handle.original.tokens = stored.tokens
                handle.original.token_cache = stored.token_cache
            if self.is_within_cooldown(session):
                logger.debug("Using token refreshed by a concurrent request")
                return session.tokens

            try:
                result = await self.provider.refresh_token_silently(
                    account_id=session.identity.account_id,
                    token_cache=session.token_cache,
                    force_refresh=True,
                )
            except ProviderError as exc:
                logger.warning("Silent refresh failed, clearing authentication: %s", exc.error or exc)
                stored.invalidate()
                await self.store.save(handle.session_id, stored, ttl=self.ttl)
                self._invalidate(handle)
                raise RefreshError() from exc

            now = max(self.clock(), session.tokens.last_refreshed_at)
            refreshed = tokens_from_result(result, now=now, previous=session.tokens)
            stored.tokens = refreshed
            stored.token_cache = result.token_cache
            await self.store.save(handle.session_id, stored, ttl=self.ttl)
            handle.written_through = True

        session.tokens = refreshed
        session.token_cache = result.token_cache
        handle.original.tokens = refreshed
        handle.original.token_cache = result.token_cache
        logger.info("Access token refreshed for account %s", session.identity.account_id)
        return refreshed

    @staticmethod
    def _invalidate(handle: SessionHandle) -> None:
        handle.data.invalidate()
        handle.original.invalidate()
