"""FastAPI dependencies shared by the auth and tenant-scoped routes."""

import logging
import urllib.parse
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.credentials import SessionCredential
from ..auth.handshake import HandshakeManager
from ..auth.replay import NonceLedger
from ..auth.resolver import IdentityResolver, ResolverSignals, TENANT_HEADER_NAMES, TenantIdShape
from ..auth.sessions import IssuedSession, SessionManager, parse_bearer
from ..config import get_settings
from ..database.connection import get_db_session
from ..errors import (
    InstallationNotFound,
    MalformedCredential,
    MalformedState,
    MissingRequiredField,
    PlatformExchangeError,
    ResolutionFailed,
    StoreUnavailable,
    WhoplyticsError,
)
from ..installations.store import InstallationStore
from ..observability.logging import set_log_context
from ..platform_api import PlatformOAuthClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

def get_installation_store(
    session: AsyncSession = Depends(get_db_session),
) -> InstallationStore:
    return InstallationStore(session)


def get_tenant_shape() -> TenantIdShape:
    return TenantIdShape(prefix=get_settings().tenant_id_prefix)


def get_identity_resolver(
    store: InstallationStore = Depends(get_installation_store),
    shape: TenantIdShape = Depends(get_tenant_shape),
) -> IdentityResolver:
    return IdentityResolver(store=store, shape=shape)


def get_session_manager(
    store: InstallationStore = Depends(get_installation_store),
) -> SessionManager:
    return SessionManager.from_settings(store=store)


def get_nonce_ledger(
    session: AsyncSession = Depends(get_db_session),
) -> NonceLedger:
    max_age = get_settings().oauth_state_max_age_seconds
    return NonceLedger(session, retention=timedelta(seconds=2 * max_age))


def get_handshake_manager(
    resolver: IdentityResolver = Depends(get_identity_resolver),
    ledger: NonceLedger = Depends(get_nonce_ledger),
) -> HandshakeManager:
    return HandshakeManager.from_settings(resolver=resolver, replay_guard=ledger)


def get_platform_client() -> PlatformOAuthClient:
    return PlatformOAuthClient.from_settings()


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def signals_from_request(
    request: Request,
    explicit_candidate: Optional[str] = None,
) -> ResolverSignals:
    """Collect every tenant hint the request carries."""
    params = request.query_params
    headers = {
        name: request.headers[name]
        for name in TENANT_HEADER_NAMES
        if name in request.headers
    }
    return ResolverSignals(
        header_tenant_hints=headers,
        referer_url=request.headers.get("referer"),
        query_candidate=params.get("companyId") or params.get("company_id"),
        experience_id_hint=params.get("experienceId") or params.get("experience_id"),
        explicit_candidate=explicit_candidate,
    )


def request_origin(request: Request) -> str:
    """Public origin of the app as seen by the browser."""
    forwarded_host = request.headers.get("x-forwarded-host")
    if forwarded_host:
        forwarded_proto = request.headers.get("x-forwarded-proto", "https")
        return f"{forwarded_proto}://{forwarded_host}"
    return str(request.base_url).rstrip("/")


def validate_redirect_origin(candidate: str, request: Request) -> str:
    """Accept a caller-supplied redirect origin only if it is one of ours."""
    parsed = urllib.parse.urlsplit(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(status_code=400, detail="redirect_origin must be an absolute http(s) origin")
    origin = f"{parsed.scheme}://{parsed.netloc}"

    allowed = {request_origin(request), get_settings().public_app_url.rstrip("/")}
    if origin in allowed or parsed.hostname in ("localhost", "127.0.0.1"):
        return origin
    raise HTTPException(status_code=400, detail="redirect_origin is not an allowed origin")


def set_session_cookie(response: Response, issued: IssuedSession) -> None:
    """Attach the session cookie; SameSite=None so it survives the Whop iframe."""
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=issued.credential_token,
        max_age=settings.session_max_age_seconds,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )


def clear_session_cookie(response: Response) -> None:
    """Expire the session cookie using the attributes it was set with."""
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value="",
        max_age=0,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )


def to_http_exception(error: WhoplyticsError) -> HTTPException:
    """Map a domain error to the HTTP status the JSON endpoints return."""
    if isinstance(error, (MissingRequiredField, MalformedCredential, MalformedState)):
        status = 400
    elif isinstance(error, InstallationNotFound):
        status = 404
    elif isinstance(error, (StoreUnavailable, ResolutionFailed)):
        status = 503
    elif isinstance(error, PlatformExchangeError):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(error))


# ---------------------------------------------------------------------------
# Session dependencies
# ---------------------------------------------------------------------------

async def get_current_session(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
) -> Optional[SessionCredential]:
    """Validate the request's session: bearer header or ``?token=`` first, cookie second."""
    bearer = parse_bearer(request.headers.get("authorization")) or request.query_params.get("token")
    cookie = request.cookies.get(get_settings().session_cookie_name)
    credential = sessions.validate(cookie_token=cookie, bearer_token=bearer)
    if credential is not None:
        set_log_context(tenant_id=credential.tenant_id)
    return credential


def require_session(
    credential: Optional[SessionCredential] = Depends(get_current_session),
) -> SessionCredential:
    if credential is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return credential


def require_tenant_access(
    company_id: str,
    credential: SessionCredential = Depends(require_session),
) -> SessionCredential:
    """Allow access to ``company_id`` only for a session bound to that tenant.

    A mismatch answers 404 rather than 403 so tenant ids cannot be probed.
    """
    if credential.tenant_id != company_id:
        logger.warning(
            "Denied cross-tenant access: session %s requested %s",
            credential.tenant_id, company_id,
        )
        raise HTTPException(status_code=404, detail="No data available")
    return credential
