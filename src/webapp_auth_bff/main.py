# src/webapp_auth_bff/main.py

import logging
import sys
import time
import typing
from contextlib import asynccontextmanager
from urllib.parse import urlencode

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from .auth_flow import AuthFlowController
from .auth_utils import IdentityProvider, MsalIdentityProvider
from .config import Settings, get_settings
from .errors import AuthError
from .gate import ERROR_PATH, RequestGateMiddleware, RouteTable, error_response
from .routes import STATIC_DIR, api_router, app_router, auth_router
from .sessions import MemorySessionStore, SessionLocks, SessionMiddleware, SessionStore
from .token_refresh import TokenRefreshManager

logger = logging.getLogger(__name__)

PACKAGE_NAME = "webapp_auth_bff"


def setup_logging(log_level: str = "INFO") -> None:
    """
    Root handler on stdout unless one is already installed,
    and the package loggers at LOG_LEVEL either way.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger(PACKAGE_NAME).setLevel(level)


def create_app(
        settings: typing.Optional[Settings] = None,
        provider: typing.Optional[IdentityProvider] = None,
        session_store: typing.Optional[SessionStore] = None,
        clock: typing.Callable[[], float] = time.time,
) -> FastAPI:
    """
    Builds the BFF with all collaborators wired explicitly.
    Tests pass their own provider, store and clock; production uses MSAL and the memory store.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)
    provider = provider or MsalIdentityProvider(settings)
    session_store = session_store or MemorySessionStore(clock=clock)
    locks = SessionLocks()
    routes = RouteTable.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("--- WebApp Auth BFF starting up ---")
        logger.info("Authority: %s", settings.BFF_AUTHORITY)
        logger.info("Redirect URI: %s", settings.BFF_REDIRECT_URI)
        logger.info("Scopes: %s", settings.BFF_SCOPES)
        logger.info("Refresh cooldown: %ss", settings.TOKEN_REFRESH_COOLDOWN_SECONDS)
        yield
        await provider.close()
        logger.info("--- WebApp Auth BFF shut down ---")

    app = FastAPI(
        title="WebApp Auth BFF",
        description="Backend-For-Frontend that signs users in with Entra ID and gates requests on the session.",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.provider = provider
    app.state.session_store = session_store
    app.state.routes = routes
    app.state.refresh_manager = TokenRefreshManager(provider, session_store, locks, settings, clock=clock)
    app.state.auth_flow = AuthFlowController(provider, session_store, locks, settings, clock=clock)

    # added first = runs innermost: the gate needs the session already loaded
    app.add_middleware(RequestGateMiddleware, routes=routes, refresh_manager=app.state.refresh_manager)
    app.add_middleware(SessionMiddleware, store=session_store, locks=locks, settings=settings)

    if STATIC_DIR.is_dir():
        app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    app.include_router(auth_router)
    app.include_router(app_router)
    app.include_router(api_router)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        level = logging.INFO if exc.client_error else logging.WARNING
        logger.log(level, "%s on %s %s (code=%s)", exc.name, request.method, request.url.path, exc.code)
        if routes.is_api(request.url.path):
            return error_response(exc)
        # browser flows land on a generic error page, never straight back into sign-in
        query = urlencode({"code": exc.code})
        return RedirectResponse(url=f"{ERROR_PATH}?{query}", status_code=status.HTTP_303_SEE_OTHER)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": status.HTTP_500_INTERNAL_SERVER_ERROR,
                "name": "InternalServerError",
                "message": "An unexpected error occurred.",
            },
        )

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "webapp_auth_bff.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
