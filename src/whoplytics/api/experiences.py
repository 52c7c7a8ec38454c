"""Experience entry point: send a Whop experience to its company dashboard."""

import logging
import urllib.parse
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from ..auth.credentials import SessionCredential
from ..auth.resolver import IdentityResolver, ResolverSignals
from ..config import get_settings
from ..errors import WhoplyticsError
from ..installations.store import InstallationStore
from .deps import get_current_session, get_identity_resolver, get_installation_store

logger = logging.getLogger(__name__)

router = APIRouter()


async def resolve_experience_tenant(
    experience_id: str,
    credential: Optional[SessionCredential],
    store: InstallationStore,
    resolver: IdentityResolver,
) -> Optional[str]:
    """Pick the company an experience visit should land on.

    A signed-in user goes to the installation they most recently linked;
    everyone else goes to the installation that owns the experience.
    """
    if credential is not None:
        record = await store.find_latest_by_user_id(
            credential.user_id, tenant_prefix=resolver.shape.prefix
        )
        if record is not None:
            logger.debug("Experience %s resolved to %s via user", experience_id, record.tenant_id)
            return record.tenant_id

    resolution = await resolver.resolve(ResolverSignals(experience_id_hint=experience_id))
    return resolution.tenant_id


@router.get("/{experience_id}/redirect")
async def experience_redirect(
    experience_id: str,
    credential: Optional[SessionCredential] = Depends(get_current_session),
    store: InstallationStore = Depends(get_installation_store),
    resolver: IdentityResolver = Depends(get_identity_resolver),
):
    """Redirect to the Whop dashboard app page, our dashboard, or back to the experience."""
    fallback = f"/experiences/{urllib.parse.quote(experience_id, safe='')}"
    try:
        tenant_id = await resolve_experience_tenant(experience_id, credential, store, resolver)
    except WhoplyticsError as e:
        logger.error("Experience redirect failed for %s: %s", experience_id, e)
        return RedirectResponse(url=fallback, status_code=302)

    if tenant_id is None:
        logger.warning("No company for experience %s, returning to experience page", experience_id)
        return RedirectResponse(url=fallback, status_code=302)

    settings = get_settings()
    if settings.whop_app_id:
        target = f"{settings.whop_dashboard_url.rstrip('/')}/{tenant_id}/apps/{settings.whop_app_id}"
    else:
        target = f"/dashboard/{tenant_id}"
    logger.info("Redirecting experience %s to %s", experience_id, target)
    return RedirectResponse(url=target, status_code=302)
