"""Tenant resolution, OAuth handshake and session credentials."""

from .credentials import CredentialCodec, SessionCredential, epoch_ms
from .handshake import (
    AuthorizationRequest,
    ExchangeResult,
    HandshakeManager,
    HandshakeResult,
)
from .replay import NonceLedger, ReplayGuard
from .resolver import (
    DIRECT_STRATEGIES,
    TENANT_HEADER_NAMES,
    IdentityResolver,
    Resolution,
    ResolverSignals,
    TenantIdShape,
)
from .sessions import IssuedSession, SessionManager, parse_bearer
from .state import OAuthState, StateCodec

__all__ = [
    "AuthorizationRequest",
    "CredentialCodec",
    "DIRECT_STRATEGIES",
    "ExchangeResult",
    "HandshakeManager",
    "HandshakeResult",
    "IdentityResolver",
    "IssuedSession",
    "NonceLedger",
    "OAuthState",
    "ReplayGuard",
    "Resolution",
    "ResolverSignals",
    "SessionCredential",
    "SessionManager",
    "StateCodec",
    "TENANT_HEADER_NAMES",
    "TenantIdShape",
    "epoch_ms",
    "parse_bearer",
]
