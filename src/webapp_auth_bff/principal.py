# src/webapp_auth_bff/principal.py

import re
import typing

from fastapi import Depends, Request
from pydantic import BaseModel, Field

from .errors import UnauthenticatedError
from .session_data import SessionData
from .sessions import SessionHandle, get_session

AUTHENTICATED_ROLE = "authenticated-user"

_SCHEMA_DISALLOWED = re.compile(r"[^A-Za-z0-9_]")


class Principal(BaseModel):
    id: str
    account_id: str
    tenant: typing.Optional[str] = None
    schema_name: str
    roles: typing.FrozenSet[str] = Field(default_factory=frozenset)
    access_token: typing.Optional[str] = Field(default=None, exclude=True)

    def is_role(self, role: str) -> bool:
        return role == "any" or role in self.roles


def format_schema(tenant_id: typing.Optional[str]) -> str:
    """
    Tenant id -> storage schema name.
    Leading underscore because some backends (PostgreSQL) reject a leading digit,
    and anything outside [A-Za-z0-9_] is dropped.
    """
    return "_" + _SCHEMA_DISALLOWED.sub("", tenant_id or "")


def map_session_to_principal(session: SessionData) -> Principal:
    identity = session.identity
    if not session.authenticated or identity is None:
        raise UnauthenticatedError()
    principal_id = identity.username or identity.account_id
    roles = {AUTHENTICATED_ROLE}
    roles.update(identity.roles)
    return Principal(
        id=principal_id,
        account_id=identity.account_id,
        tenant=identity.tenant_id,
        schema_name=format_schema(identity.tenant_id),
        roles=frozenset(roles),
        access_token=session.tokens.access_token if session.tokens else None,
    )


def get_principal(request: Request, handle: SessionHandle = Depends(get_session)) -> Principal:
    """FastAPI dependency for routes behind the gate."""
    principal = map_session_to_principal(handle.data)
    # the gate may have refreshed the token for this request
    access_token = getattr(request.state, "access_token", None)
    if access_token:
        principal = principal.model_copy(update={"access_token": access_token})
    return principal
