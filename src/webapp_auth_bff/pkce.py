# src/webapp_auth_bff/pkce.py
"""
PKCE pairs, anti-CSRF tokens and the opaque `state` parameter.
Everything here draws from `secrets`; nothing is stored.
"""

import base64
import binascii
import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict

from .errors import MalformedStateError

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class ChallengePair:
    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def compute_challenge(verifier: str) -> str:
    """S256: base64url(SHA-256(verifier)) without padding (RFC 7636 §4.2)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_challenge_pair(num_bytes: int = 32) -> ChallengePair:
    # 32 random bytes -> 43 char verifier, the RFC 7636 minimum length
    verifier = secrets.token_urlsafe(num_bytes)
    return ChallengePair(verifier=verifier, challenge=compute_challenge(verifier))


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def encode_state(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_state(state: str) -> Dict[str, Any]:
    """
    Inverse of encode_state.
    Raises MalformedStateError for anything that is not base64url-encoded JSON object.
    """
    if not state or not isinstance(state, str):
        raise MalformedStateError()
    padded = state + "=" * (-len(state) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise MalformedStateError() from exc
    if not isinstance(payload, dict):
        raise MalformedStateError()
    return payload
