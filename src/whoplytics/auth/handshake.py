"""OAuth handshake with Whop.

``begin_handshake`` resolves a best-effort candidate tenant, packs it into a
signed state value together with a CSRF nonce and issue time, and builds the
authorize URL. On the callback ``redeem_state`` checks the returned state
(shape, signature, age, single use) before the code is exchanged, and
``bind_tenant`` binds the exchanged identity to a tenant. The company the
platform reports always outranks the candidate carried in the state.
"""

import logging
import secrets
import urllib.parse
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import Settings, get_settings
from ..errors import ExpiredState, MalformedState, ResolutionFailed, UnresolvedTenant
from ..observability.logging import redact
from .credentials import epoch_ms
from .replay import ReplayGuard
from .resolver import IdentityResolver, ResolverSignals
from .state import OAuthState, StateCodec

logger = logging.getLogger(__name__)

# Tolerated clock skew for states stamped slightly in the future
_FUTURE_SKEW_MS = 60_000


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str
    candidate_tenant_id: Optional[str] = None


@dataclass(frozen=True)
class ExchangeResult:
    """Identity returned by the platform after exchanging the auth code."""

    access_token: str
    user_id: str
    username: Optional[str] = None
    company_id: Optional[str] = None


@dataclass(frozen=True)
class HandshakeResult:
    tenant_id: str
    user_id: str
    display_name: Optional[str]
    access_token: str
    experience_id: Optional[str] = None
    source: str = "state"

    @property
    def confirmed(self) -> bool:
        """True when the platform itself named the tenant."""
        return self.source == "exchange"


class HandshakeManager:
    """Builds authorize URLs and validates callbacks."""

    def __init__(
        self,
        resolver: IdentityResolver,
        codec: StateCodec,
        client_id: str,
        authorize_url: str,
        scopes: str,
        callback_path: str,
        max_age_ms: int,
        replay_guard: Optional[ReplayGuard] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.resolver = resolver
        self.codec = codec
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.scopes = scopes
        self.callback_path = callback_path
        self.max_age_ms = max_age_ms
        self.replay_guard = replay_guard
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        resolver: IdentityResolver,
        replay_guard: Optional[ReplayGuard] = None,
        settings: Optional[Settings] = None,
    ) -> "HandshakeManager":
        settings = settings or get_settings()
        return cls(
            resolver=resolver,
            codec=StateCodec(settings.secret_key),
            client_id=settings.whop_app_id or "",
            authorize_url=settings.whop_oauth_authorize_url,
            scopes=settings.oauth_scopes,
            callback_path=settings.oauth_callback_path,
            max_age_ms=settings.oauth_state_max_age_seconds * 1000,
            replay_guard=replay_guard,
        )

    def redirect_uri(self, redirect_origin: str) -> str:
        return f"{redirect_origin.rstrip('/')}{self.callback_path}"

    async def begin_handshake(
        self,
        signals: ResolverSignals,
        redirect_origin: str,
    ) -> AuthorizationRequest:
        """Build the external authorization URL for this request."""
        try:
            resolution = await self.resolver.resolve(signals)
            candidate = resolution.tenant_id
        except ResolutionFailed as e:
            # The callback can still bind the tenant from the exchange result
            logger.warning("Starting OAuth without a candidate tenant: %s", e)
            candidate = None

        state = OAuthState(
            csrf_nonce=secrets.token_hex(16),
            tenant_id_hint=signals.raw_header_hint(),
            candidate_tenant_id=candidate,
            issued_at_ms=self.clock(),
            experience_id=signals.experience_id_hint,
        )
        encoded = self.codec.encode(state)

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri(redirect_origin),
            "response_type": "code",
            "scope": self.scopes,
            "state": encoded,
        }
        url = f"{self.authorize_url}?{urllib.parse.urlencode(params)}"

        logger.info(
            "Generated OAuth URL (candidate=%s, state=%s)",
            candidate or "none", redact(encoded),
        )
        return AuthorizationRequest(url=url, state=encoded, candidate_tenant_id=candidate)

    def check_state(self, returned_state: Optional[str]) -> OAuthState:
        """Decode a returned state and enforce the age bound.

        Raises:
            MalformedState: corrupt, forged, or stamped too far in the future.
            ExpiredState: older than the configured maximum age.
        """
        if not returned_state:
            raise MalformedState("state parameter missing")
        state = self.codec.decode(returned_state)

        age_ms = self.clock() - state.issued_at_ms
        if age_ms < -_FUTURE_SKEW_MS:
            raise MalformedState("state issued in the future")
        if age_ms > self.max_age_ms:
            raise ExpiredState(
                f"OAuth state is {age_ms // 1000}s old (max {self.max_age_ms // 1000}s)",
                age_ms=age_ms,
            )
        return state

    async def redeem_state(self, returned_state: Optional[str]) -> OAuthState:
        """Check a returned state and mark its nonce as used.

        Run this before spending the authorization code so a replayed state
        never reaches the platform.

        Raises:
            MalformedState, ExpiredState: the state is unusable.
            ReplayedState: the state was already redeemed.
        """
        state = self.check_state(returned_state)
        if self.replay_guard is not None:
            await self.replay_guard.consume(state.csrf_nonce)
        return state

    def bind_tenant(self, state: OAuthState, exchange_result: ExchangeResult) -> HandshakeResult:
        """Bind the exchanged identity to a tenant.

        The company the platform returns is authoritative. The state's
        candidate and header hint were derived from untrusted request signals,
        so they only name the tenant when the exchange is silent, and any
        disagreement with the exchange is rejected.

        Raises:
            UnresolvedTenant: no tenant, or the state and exchange disagree.
        """
        shape = self.resolver.shape
        claimed = [
            (source, value)
            for source, value in (("state", state.candidate_tenant_id), ("hint", state.tenant_id_hint))
            if shape.matches(value)
        ]

        if shape.matches(exchange_result.company_id):
            tenant_id, source = exchange_result.company_id, "exchange"
            conflicting = [value for _, value in claimed if value != tenant_id]
            if conflicting:
                logger.warning(
                    "OAuth state named %s but the platform returned %s for user %s",
                    conflicting[0], tenant_id, exchange_result.user_id,
                )
                raise UnresolvedTenant("OAuth state does not match the authenticated company")
        elif claimed:
            source, tenant_id = claimed[0]
        else:
            raise UnresolvedTenant("OAuth callback could not be bound to a company")

        logger.info("OAuth handshake completed for %s via %s", tenant_id, source)
        return HandshakeResult(
            tenant_id=tenant_id,
            user_id=exchange_result.user_id,
            display_name=exchange_result.username,
            access_token=exchange_result.access_token,
            experience_id=state.experience_id,
            source=source,
        )

    async def complete_handshake(
        self,
        returned_state: Optional[str],
        exchange_result: ExchangeResult,
    ) -> HandshakeResult:
        """Redeem the callback state and bind the exchanged identity to a tenant.

        Raises:
            MalformedState, ExpiredState: the state is unusable.
            ReplayedState: the state was already redeemed.
            UnresolvedTenant: no tenant could be bound, or the sources disagree.
        """
        state = await self.redeem_state(returned_state)
        return self.bind_tenant(state, exchange_result)
