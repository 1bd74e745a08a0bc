# src/webapp_auth_bff/routes.py

import logging
import typing

from fastapi import APIRouter, Depends, Form, Request, Response, status
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .auth_flow import AuthFlowController, CallbackParams
from .config import CONFIG_FILE_DIR
from .errors import ERRORS_BY_CODE, AuthError
from .gate import CALLBACK_PATH, ERROR_PATH, SIGNIN_PATH, SIGNOUT_PATH
from .principal import Principal, get_principal
from .sessions import SessionHandle, get_session

logger = logging.getLogger(__name__)

TEMPLATES_DIR = CONFIG_FILE_DIR / "templates"
STATIC_DIR = CONFIG_FILE_DIR / "static"

templates = Jinja2Templates(directory=TEMPLATES_DIR)


def get_auth_flow(request: Request) -> AuthFlowController:
    return request.app.state.auth_flow


# --- Authentication Routes ---
auth_router = APIRouter(tags=["authentication"])


@auth_router.get(SIGNIN_PATH)
async def signin(
        handle: SessionHandle = Depends(get_session),
        flow: AuthFlowController = Depends(get_auth_flow),
):
    auth_url = flow.initiate_sign_in(handle, handle.data.return_to)
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@auth_router.post(CALLBACK_PATH)
async def redirect_callback(
        handle: SessionHandle = Depends(get_session),
        flow: AuthFlowController = Depends(get_auth_flow),
        code: typing.Optional[str] = Form(None),
        state: typing.Optional[str] = Form(None),
        error: typing.Optional[str] = Form(None),
        error_description: typing.Optional[str] = Form(None),
):
    params = CallbackParams(code=code, state=state, error=error, error_description=error_description)
    target = await flow.handle_callback(handle, params)
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


@auth_router.get(SIGNOUT_PATH)
async def signout(
        handle: SessionHandle = Depends(get_session),
        flow: AuthFlowController = Depends(get_auth_flow),
):
    logout_url = await flow.sign_out(handle)
    return RedirectResponse(url=logout_url, status_code=status.HTTP_302_FOUND)


@auth_router.get(ERROR_PATH, response_class=HTMLResponse)
async def auth_error_page(request: Request, code: typing.Optional[str] = None):
    error_cls = ERRORS_BY_CODE.get(code or "", AuthError)
    error = error_cls()
    return templates.TemplateResponse(
        request,
        "error.html",
        {"title": "Sign-in problem", "message": error.message, "retry_url": SIGNIN_PATH},
        status_code=error.status_code,
    )


# --- Application Routes ---
app_router = APIRouter()


@app_router.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


@app_router.get("/favicon.ico", include_in_schema=False)
async def favicon():
    favicon_path = STATIC_DIR / "favicon.ico"
    if favicon_path.is_file():
        return FileResponse(favicon_path, media_type="image/x-icon")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app_router.get("/", response_class=HTMLResponse)
async def read_root(request: Request, principal: Principal = Depends(get_principal)):
    return templates.TemplateResponse(
        request,
        "index.html",
        {"user": principal, "signout_url": SIGNOUT_PATH},
    )


@app_router.get("/users/id")
async def user_id_token_claims(handle: SessionHandle = Depends(get_session), principal: Principal = Depends(get_principal)):
    return {"idTokenClaims": handle.data.identity.claims}


# --- Protected API ---
api_router = APIRouter(prefix="/v2", tags=["api"])


@api_router.get("/profile")
async def profile(principal: Principal = Depends(get_principal)):
    return {
        "id": principal.id,
        "accountId": principal.account_id,
        "tenant": principal.tenant,
        "schema": principal.schema_name,
        "roles": sorted(principal.roles),
    }
