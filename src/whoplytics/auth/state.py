"""OAuth state token codec.

Uses the same signed compact encoding as session credentials, so the state
survives the round trip through Whop's authorize endpoint using only
URL-safe characters and cannot be altered in transit.
"""

from dataclasses import dataclass
from typing import Any, Optional

from ..config import get_settings
from ..errors import MalformedState
from .credentials import decode_payload, encode_payload


@dataclass(frozen=True)
class OAuthState:
    csrf_nonce: str
    tenant_id_hint: Optional[str]
    candidate_tenant_id: Optional[str]
    issued_at_ms: int
    experience_id: Optional[str] = None


def _optional_str(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise MalformedState(f"{key} is not a string")
    return value


class StateCodec:
    """Encode and decode OAuth state values under one signing key."""

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("secret_key is required")
        self._secret = secret_key

    @classmethod
    def from_settings(cls) -> "StateCodec":
        return cls(get_settings().secret_key)

    def encode(self, state: OAuthState) -> str:
        return encode_payload(
            {
                "csrf": state.csrf_nonce,
                "hint": state.tenant_id_hint,
                "companyId": state.candidate_tenant_id,
                "experienceId": state.experience_id,
                "timestamp": state.issued_at_ms,
            },
            self._secret,
        )

    def decode(self, opaque: str) -> OAuthState:
        """Decode an opaque state value.

        Raises:
            MalformedState: bad encoding or signature, or fields missing/mistyped.
        """
        try:
            payload = decode_payload(opaque, self._secret)
        except ValueError as e:
            raise MalformedState(f"Undecodable OAuth state: {e}") from e

        nonce: Any = payload.get("csrf")
        issued_at: Any = payload.get("timestamp")
        if not isinstance(nonce, str) or not nonce:
            raise MalformedState("csrf nonce missing")
        if not isinstance(issued_at, int) or isinstance(issued_at, bool):
            raise MalformedState("timestamp missing or not an integer")

        return OAuthState(
            csrf_nonce=nonce,
            tenant_id_hint=_optional_str(payload, "hint"),
            candidate_tenant_id=_optional_str(payload, "companyId"),
            issued_at_ms=issued_at,
            experience_id=_optional_str(payload, "experienceId"),
        )
