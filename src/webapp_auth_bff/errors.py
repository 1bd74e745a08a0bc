# src/webapp_auth_bff/errors.py

from typing import Any, Dict

from fastapi import status


class AuthError(Exception):
    """
    Base class for everything the auth layer raises on purpose.
    The message is safe to show to a browser or API client; internals go to the log.
    """
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "auth_error"
    client_error: bool = True
    default_message: str = "Authentication failed."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_body(self) -> Dict[str, Any]:
        return {"status": self.status_code, "name": self.name, "message": self.message}


# --- Callback validation (client-caused, terminal) ---

class MissingStateError(AuthError):
    code = "missing_state"
    default_message = "The sign-in response did not include a state parameter."


class ExpiredOrMissingFlowError(AuthError):
    code = "expired_flow"
    default_message = "No sign-in is in progress for this session, or it has expired. Please sign in again."


class CsrfMismatchError(AuthError):
    code = "csrf_mismatch"
    default_message = "The sign-in response does not belong to this session."


class MalformedStateError(AuthError):
    code = "malformed_state"
    default_message = "The sign-in state parameter could not be decoded."


# --- Upstream-caused ---

class ProviderError(Exception):
    """Raised by IdentityProvider implementations; wrapped before it reaches a route."""

    def __init__(self, message: str, error: str = None):
        super().__init__(message)
        self.error = error


class TokenExchangeError(AuthError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "token_exchange_failed"
    client_error = False
    default_message = "The identity provider could not complete the sign-in."


class RefreshError(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "refresh_failed"
    client_error = False
    default_message = "Your session has expired. Please sign in again."


class ProviderUnavailableError(AuthError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "provider_unavailable"
    client_error = False
    default_message = "The identity provider is currently unavailable."


# --- Control flow ---

class NotAuthenticatedError(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "not_authenticated"
    default_message = "Authentication required."


class UnauthenticatedError(NotAuthenticatedError):
    """Raised when a principal is requested for a session without a signed-in user."""


ERRORS_BY_CODE: Dict[str, type] = {
    cls.code: cls
    for cls in (
        MissingStateError,
        ExpiredOrMissingFlowError,
        CsrfMismatchError,
        MalformedStateError,
        TokenExchangeError,
        RefreshError,
        ProviderUnavailableError,
        NotAuthenticatedError,
    )
}
