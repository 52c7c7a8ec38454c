"""Session issue, validation and refresh.

Sessions are self-contained signed credentials; nothing is cached
server-side. The same token works as the ``whop_session`` cookie and as a
bearer token, because Whop's iframe often drops third-party cookies.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import Settings, get_settings
from ..errors import InstallationNotFound, MalformedCredential, MissingRequiredField
from ..installations.store import InstallationLookup
from .credentials import CredentialCodec, SessionCredential, epoch_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    credential_token: str
    expires_at_ms: int
    credential: SessionCredential

    @property
    def tenant_id(self) -> str:
        return self.credential.tenant_id


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` value."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class SessionManager:
    """Issue, validate and refresh session credentials."""

    def __init__(
        self,
        codec: CredentialCodec,
        ttl_ms: int,
        store: Optional[InstallationLookup] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        self.codec = codec
        self.ttl_ms = ttl_ms
        self.store = store
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        store: Optional[InstallationLookup] = None,
        settings: Optional[Settings] = None,
    ) -> "SessionManager":
        settings = settings or get_settings()
        return cls(
            codec=CredentialCodec(settings.secret_key),
            ttl_ms=settings.session_ttl_ms,
            store=store,
        )

    def issue(
        self,
        tenant_id: str,
        user_id: str,
        display_name: Optional[str] = None,
    ) -> IssuedSession:
        """Create a fresh credential valid for the configured window."""
        missing = [name for name, value in (("companyId", tenant_id), ("userId", user_id)) if not value]
        if missing:
            raise MissingRequiredField(*missing)

        credential = SessionCredential(
            tenant_id=tenant_id,
            user_id=user_id,
            display_name=display_name or None,
            expires_at_ms=self.clock() + self.ttl_ms,
        )
        token = self.codec.encode(credential)
        logger.info("Issued session for %s (user=%s)", tenant_id, user_id)
        return IssuedSession(
            credential_token=token,
            expires_at_ms=credential.expires_at_ms,
            credential=credential,
        )

    def validate(
        self,
        cookie_token: Optional[str] = None,
        bearer_token: Optional[str] = None,
    ) -> Optional[SessionCredential]:
        """Return the session carried by the request, or ``None``.

        The bearer token is tried first; the cookie is the fallback. Missing,
        malformed and expired tokens all yield ``None``.
        """
        now = self.clock()
        for source, token in (("bearer", bearer_token), ("cookie", cookie_token)):
            if not token:
                continue
            try:
                credential = self.codec.decode(token)
            except MalformedCredential as e:
                logger.debug("Ignoring %s session: %s", source, e)
                continue
            if not credential.is_valid(now):
                logger.debug("Ignoring expired %s session for %s", source, credential.tenant_id)
                continue
            return credential
        return None

    async def refresh(self, tenant_id: str) -> IssuedSession:
        """Issue a new session straight from the tenant's installation record.

        Raises:
            MissingRequiredField: no tenant id given.
            InstallationNotFound: the tenant has no installation.
            StoreUnavailable: the store could not be read.
        """
        if not tenant_id:
            raise MissingRequiredField("companyId")
        if self.store is None:
            raise RuntimeError("SessionManager.refresh requires an installation store")

        record = await self.store.find_by_tenant_id(tenant_id)
        if record is None:
            raise InstallationNotFound(tenant_id)

        logger.info("Refreshing session from installation for %s", record.tenant_id)
        return self.issue(
            tenant_id=record.tenant_id,
            user_id=record.user_id or record.tenant_id,
            display_name=record.username,
        )
