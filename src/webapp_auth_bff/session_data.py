# src/webapp_auth_bff/session_data.py

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Dict, Any, List, Optional


class PendingFlow(BaseModel):
    """Artifacts of a sign-in that has been started but not yet called back."""
    verifier: str
    challenge_method: str = "S256"
    challenge: str
    csrf_token: str
    expected_redirect_target: str = "/"
    created_at: float


class Identity(BaseModel):
    account_id: str  # provider home account id, stable per user
    username: str
    tenant_id: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict)
    roles: List[str] = Field(default_factory=list)


class TokenSet(BaseModel):
    access_token: str
    id_token: Optional[str] = None
    expires_at: Optional[float] = None
    last_refreshed_at: float


class SessionData(BaseModel):
    """
    Represents the data stored server-side for a user session.
    Only a signed session ID is stored in the browser cookie.
    """
    model_config = ConfigDict(validate_assignment=True)

    pending_flow: Optional[PendingFlow] = None
    identity: Optional[Identity] = None
    tokens: Optional[TokenSet] = None
    authenticated: bool = False
    return_to: Optional[str] = None  # path to redirect to after login
    token_cache: Optional[str] = None  # serialized provider cache for this session's account

    @model_validator(mode="after")
    def check_authenticated(self) -> "SessionData":
        if self.authenticated and (self.identity is None or self.tokens is None):
            raise ValueError("authenticated session requires identity and tokens")
        return self

    def sign_in(self, identity: Identity, tokens: TokenSet, token_cache: Optional[str] = None) -> None:
        self.identity = identity
        self.tokens = tokens
        self.token_cache = token_cache
        self.authenticated = True

    def invalidate(self) -> None:
        # identity/tokens stay for diagnostics only; nothing reads them while unauthenticated
        self.authenticated = False

    def is_empty(self) -> bool:
        return self == SessionData()
