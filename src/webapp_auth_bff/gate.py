# src/webapp_auth_bff/gate.py

import enum
import logging
import typing
from dataclasses import dataclass
from fnmatch import fnmatchcase

from fastapi import Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings
from .errors import AuthError, NotAuthenticatedError
from .token_refresh import TokenRefreshManager

logger = logging.getLogger(__name__)

SIGNIN_PATH = "/auth/signin"
CALLBACK_PATH = "/auth/redirect"
SIGNOUT_PATH = "/auth/signout"
ERROR_PATH = "/auth/error"
AUTH_PATHS = (SIGNIN_PATH, CALLBACK_PATH, SIGNOUT_PATH, ERROR_PATH, "/health")


class AccessPolicy(str, enum.Enum):
    PUBLIC = "public"
    PROTECTED_REDIRECT = "protectedRedirect"
    PROTECTED_API = "protectedApi"
    UNPROTECTED = "unprotected"  # no rule matched


@dataclass(frozen=True)
class RouteRule:
    pattern: str
    policy: AccessPolicy

    def matches(self, path: str) -> bool:
        # "/prefix/*" covers "/prefix" itself and everything below it
        if self.pattern.endswith("/*"):
            prefix = self.pattern[:-2]
            return path == prefix or path.startswith(prefix + "/")
        if any(ch in self.pattern for ch in "*?["):
            return fnmatchcase(path, self.pattern)
        return path == self.pattern


class RouteTable:
    """
    Maps request paths to an AccessPolicy. Public rules always win, then rules are
    tried in declaration order; a path no rule matches is UNPROTECTED.
    """

    def __init__(self, rules: typing.Iterable[RouteRule]):
        rules = list(rules)
        self.rules = [r for r in rules if r.policy is AccessPolicy.PUBLIC] + \
                     [r for r in rules if r.policy is not AccessPolicy.PUBLIC]

    @classmethod
    def from_settings(cls, settings: Settings) -> "RouteTable":
        rules = [RouteRule(path, AccessPolicy.PUBLIC) for path in AUTH_PATHS]
        rules += [RouteRule(p, AccessPolicy.PUBLIC) for p in settings.PUBLIC_PATHS]
        rules += [RouteRule(p, AccessPolicy.PROTECTED_API) for p in settings.PROTECTED_API_PATHS]
        rules += [RouteRule(p, AccessPolicy.PROTECTED_REDIRECT) for p in settings.PROTECTED_REDIRECT_PATHS]
        return cls(rules)

    def classify(self, path: str) -> AccessPolicy:
        for rule in self.rules:
            if rule.matches(path):
                return rule.policy
        return AccessPolicy.UNPROTECTED

    def is_api(self, path: str) -> bool:
        return self.classify(path) is AccessPolicy.PROTECTED_API


def error_response(exc: AuthError, status_code: typing.Optional[int] = None) -> JSONResponse:
    body = exc.to_body()
    if status_code is not None:
        body["status"] = status_code
    return JSONResponse(status_code=body["status"], content=body)


class RequestGateMiddleware(BaseHTTPMiddleware):
    """
    Per-request decision: pass, redirect to sign-in, or 401.
    Runs inside SessionMiddleware, so request.state.session is always set.
    """

    def __init__(self, app, routes: RouteTable, refresh_manager: TokenRefreshManager):
        super().__init__(app)
        self.routes = routes
        self.refresh_manager = refresh_manager

    async def dispatch(self, request, call_next):
        path = request.url.path
        policy = self.routes.classify(path)

        if policy in (AccessPolicy.PUBLIC, AccessPolicy.UNPROTECTED):
            return await call_next(request)

        handle = request.state.session
        if not handle.data.authenticated:
            logger.debug("Gate: anonymous request to %s path %s", policy.value, path)
            return self._unauthenticated(request, policy, NotAuthenticatedError())

        try:
            tokens = await self.refresh_manager.ensure_fresh_token(handle)
        except AuthError as exc:
            logger.info("Gate: %s on %s, treating request as anonymous", exc.name, path)
            return self._unauthenticated(request, policy, exc)

        request.state.access_token = tokens.access_token
        request.state.token_set = tokens
        return await call_next(request)

    @staticmethod
    def _unauthenticated(request: Request, policy: AccessPolicy, exc: AuthError):
        if policy is AccessPolicy.PROTECTED_API:
            return error_response(exc, status_code=status.HTTP_401_UNAUTHORIZED)

        # browser route: remember where the user was going
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        request.state.session.data.return_to = target
        return RedirectResponse(url=SIGNIN_PATH, status_code=status.HTTP_302_FOUND)
