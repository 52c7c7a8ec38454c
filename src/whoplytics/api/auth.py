"""Whop OAuth and session endpoints."""

import logging
import urllib.parse
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from ..auth.credentials import SessionCredential
from ..auth.handshake import HandshakeManager, HandshakeResult
from ..auth.resolver import TenantIdShape
from ..auth.sessions import IssuedSession, SessionManager
from ..errors import (
    InstallationNotFound,
    MalformedCredential,
    MissingRequiredField,
    UnresolvedTenant,
    WhoplyticsError,
)
from ..installations.store import InstallationStore
from ..observability.logging import redact, set_log_context
from ..platform_api import PlatformOAuthClient
from .deps import (
    clear_session_cookie,
    get_handshake_manager,
    get_installation_store,
    get_platform_client,
    get_session_manager,
    get_tenant_shape,
    request_origin,
    require_session,
    set_session_cookie,
    signals_from_request,
    to_http_exception,
    validate_redirect_origin,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class AuthorizationResponse(BaseModel):
    url: str
    state: str


class SessionRequest(BaseModel):
    companyId: Optional[str] = None
    userId: Optional[str] = None
    username: Optional[str] = None
    sessionToken: Optional[str] = None


class SessionResponse(BaseModel):
    success: bool = True
    sessionToken: str
    expiresAt: int


class SessionInfo(BaseModel):
    companyId: str
    userId: str
    username: Optional[str] = None
    expiresAt: int


def _login_redirect(error_code: str) -> RedirectResponse:
    query = urllib.parse.urlencode({"error": error_code})
    return RedirectResponse(url=f"/login?{query}", status_code=302)


def _session_response(issued: IssuedSession, response: Response) -> SessionResponse:
    set_session_cookie(response, issued)
    return SessionResponse(
        sessionToken=issued.credential_token,
        expiresAt=issued.expires_at_ms,
    )


async def _record_installation(store: InstallationStore, result: HandshakeResult) -> None:
    """Store the login's access token against the bound tenant.

    An existing installation is only rewritten when the platform confirmed
    the tenant or the same user linked it before. An experience already
    linked to another tenant stays where it is.
    """
    existing = await store.find_by_tenant_id(result.tenant_id)
    if existing is not None and not result.confirmed and existing.user_id != result.user_id:
        logger.warning(
            "User %s is not linked to existing installation %s",
            result.user_id, result.tenant_id,
        )
        raise UnresolvedTenant(f"{result.tenant_id} was not confirmed for this user")

    experience_id = result.experience_id
    if experience_id:
        owner = await store.find_by_experience_id(experience_id)
        if owner is not None and owner.tenant_id != result.tenant_id:
            logger.warning(
                "Not moving experience %s from %s to %s",
                experience_id, owner.tenant_id, result.tenant_id,
            )
            experience_id = None

    await store.upsert(
        result.tenant_id,
        {
            "access_token": result.access_token,
            "user_id": result.user_id,
            "username": result.display_name,
            "experience_id": experience_id,
        },
    )


# ---------------------------------------------------------------------------
# OAuth handshake
# ---------------------------------------------------------------------------

@router.get("/init", response_model=AuthorizationResponse)
async def init_oauth(
    request: Request,
    redirect_origin: Optional[str] = None,
    handshake: HandshakeManager = Depends(get_handshake_manager),
):
    """Start the Whop OAuth flow and return the authorize URL."""
    if redirect_origin:
        origin = validate_redirect_origin(redirect_origin, request)
    else:
        origin = request_origin(request)

    if not handshake.client_id:
        raise HTTPException(status_code=500, detail="Whop OAuth is not configured")

    authorization = await handshake.begin_handshake(signals_from_request(request), origin)
    return AuthorizationResponse(url=authorization.url, state=authorization.state)


@router.get("/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    handshake: HandshakeManager = Depends(get_handshake_manager),
    platform: PlatformOAuthClient = Depends(get_platform_client),
    store: InstallationStore = Depends(get_installation_store),
    sessions: SessionManager = Depends(get_session_manager),
):
    """Finish the OAuth flow, record the installation and start a session.

    Every failure lands on ``/login?error=<code>``.
    """
    if error:
        logger.warning("OAuth provider returned error: %s", error)
        return _login_redirect(error)
    if not code or not state:
        return _login_redirect(MissingRequiredField("code", "state").code)

    try:
        # Reject stale, forged or replayed states before spending the code
        oauth_state = await handshake.redeem_state(state)
        exchange = await platform.exchange_code(code, handshake.redirect_uri(request_origin(request)))
        result = handshake.bind_tenant(oauth_state, exchange)
        set_log_context(tenant_id=result.tenant_id)

        await _record_installation(store, result)
        issued = sessions.issue(result.tenant_id, result.user_id, result.display_name)
    except WhoplyticsError as e:
        logger.warning("OAuth callback failed (%s): %s", e.code, e)
        return _login_redirect(e.code)

    logger.info(
        "OAuth callback succeeded for %s (user=%s, state=%s)",
        result.tenant_id, result.user_id, redact(state),
    )
    response = RedirectResponse(url=f"/dashboard/{result.tenant_id}", status_code=302)
    set_session_cookie(response, issued)
    return response


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.post("/session", response_model=SessionResponse)
async def create_session(
    body: SessionRequest,
    response: Response,
    store: InstallationStore = Depends(get_installation_store),
    sessions: SessionManager = Depends(get_session_manager),
    shape: TenantIdShape = Depends(get_tenant_shape),
):
    """Set the session cookie from an existing token or from company/user ids."""
    if body.sessionToken:
        try:
            credential = sessions.codec.decode(body.sessionToken)
        except MalformedCredential as e:
            logger.info("Rejected session token: %s", e)
            raise HTTPException(status_code=400, detail="Invalid session token") from e
        if not credential.is_valid(sessions.clock()):
            raise HTTPException(status_code=400, detail="Session token has expired")
        issued = IssuedSession(
            credential_token=body.sessionToken,
            expires_at_ms=credential.expires_at_ms,
            credential=credential,
        )
        return _session_response(issued, response)

    try:
        if not body.companyId or not body.userId:
            missing = [n for n, v in (("companyId", body.companyId), ("userId", body.userId)) if not v]
            raise MissingRequiredField(*missing)
        if not shape.matches(body.companyId):
            raise HTTPException(status_code=400, detail="companyId is not a valid company id")
        if await store.find_by_tenant_id(body.companyId) is None:
            raise InstallationNotFound(body.companyId)
        issued = sessions.issue(body.companyId, body.userId, body.username)
    except WhoplyticsError as e:
        raise to_http_exception(e) from e

    return _session_response(issued, response)


@router.post("/refresh", response_model=SessionResponse)
async def refresh_session(
    response: Response,
    companyId: Optional[str] = None,
    sessions: SessionManager = Depends(get_session_manager),
):
    """Re-issue a session from the company's installation record."""
    try:
        issued = await sessions.refresh(companyId or "")
    except WhoplyticsError as e:
        raise to_http_exception(e) from e
    return _session_response(issued, response)


@router.post("/logout")
async def logout(response: Response):
    clear_session_cookie(response)
    return {"success": True}


@router.get("/logout")
async def logout_redirect():
    response = RedirectResponse(url="/login", status_code=302)
    clear_session_cookie(response)
    return response


@router.get("/me", response_model=SessionInfo)
async def current_session(credential: SessionCredential = Depends(require_session)):
    return SessionInfo(
        companyId=credential.tenant_id,
        userId=credential.user_id,
        username=credential.display_name,
        expiresAt=credential.expires_at_ms,
    )
