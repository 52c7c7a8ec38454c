"""Session credential codec.

A credential is a compact JWS (HS256, signed with SECRET_KEY) whose payload
is the JSON document ``{"companyId", "userId", "username", "exp"}``. The
payload stays readable base64url, so the scheme is reversible, but any
edited or forged token fails signature verification and is reported as
``MalformedCredential``. Expiry is not checked here; that is the session
layer's job, so ``decode(encode(c)) == c`` holds for expired credentials too.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from jose import jws
from jose.exceptions import JWSError

from ..config import get_settings
from ..errors import MalformedCredential

ALGORITHM = "HS256"


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def encode_payload(payload: Dict[str, Any], secret: str) -> str:
    """Serialise *payload* and sign it into a URL-safe compact token."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return jws.sign(body.encode("utf-8"), secret, algorithm=ALGORITHM)


def decode_payload(token: str, secret: str) -> Dict[str, Any]:
    """Verify *token* and return its JSON payload.

    Raises:
        ValueError: the token is unsigned, tampered, or not a JSON object.
    """
    if not isinstance(token, str) or not token:
        raise ValueError("empty token")
    try:
        raw = jws.verify(token, secret, algorithms=[ALGORITHM])
        payload = json.loads(raw)
    except (JWSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(str(e)) from e
    if not isinstance(payload, dict):
        raise ValueError("payload is not an object")
    return payload


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class SessionCredential:
    """Decoded session: which tenant, which user, valid until when (epoch ms)."""

    tenant_id: str
    user_id: str
    display_name: Optional[str]
    expires_at_ms: int

    def is_valid(self, now_ms: int) -> bool:
        return now_ms < self.expires_at_ms


class CredentialCodec:
    """Encode and decode session credentials under one signing key."""

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("secret_key is required")
        self._secret = secret_key

    @classmethod
    def from_settings(cls) -> "CredentialCodec":
        return cls(get_settings().secret_key)

    def encode(self, credential: SessionCredential) -> str:
        return encode_payload(
            {
                "companyId": credential.tenant_id,
                "userId": credential.user_id,
                "username": credential.display_name,
                "exp": credential.expires_at_ms,
            },
            self._secret,
        )

    def decode(self, token: str) -> SessionCredential:
        """Decode *token*.

        Raises:
            MalformedCredential: bad encoding or signature, or fields missing/mistyped.
        """
        try:
            payload = decode_payload(token, self._secret)
        except ValueError as e:
            raise MalformedCredential(f"Undecodable session credential: {e}") from e

        tenant_id = payload.get("companyId")
        user_id = payload.get("userId")
        display_name = payload.get("username")
        expires_at_ms = payload.get("exp")

        if not isinstance(tenant_id, str) or not tenant_id:
            raise MalformedCredential("companyId missing or not a string")
        if not isinstance(user_id, str) or not user_id:
            raise MalformedCredential("userId missing or not a string")
        if display_name is not None and not isinstance(display_name, str):
            raise MalformedCredential("username is not a string")
        if not _is_int(expires_at_ms):
            raise MalformedCredential("exp missing or not an integer")

        return SessionCredential(
            tenant_id=tenant_id,
            user_id=user_id,
            display_name=display_name,
            expires_at_ms=expires_at_ms,
        )
