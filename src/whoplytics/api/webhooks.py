"""Whop webhook receiver for installation events."""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ..auth.resolver import TenantIdShape
from ..config import get_settings
from ..errors import InstallationNotFound, MissingRequiredField, WhoplyticsError
from ..installations.plans import normalize_plan
from ..installations.store import InstallationStore
from ..observability.logging import set_log_context
from .deps import get_installation_store, get_tenant_shape, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter()


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 over ``"<timestamp>.<raw body>"``."""
    signed = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(
    secret: Optional[str],
    signature: str,
    timestamp: str,
    body: bytes,
) -> bool:
    if not secret:
        if get_settings().environment == "production":
            logger.error("WHOP_WEBHOOK_SECRET not set, rejecting webhook")
            return False
        logger.warning("WHOP_WEBHOOK_SECRET not set, skipping signature verification")
        return True
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


async def _handle_installed(data: Dict[str, Any], store: InstallationStore):
    company_id = data.get("company_id")
    missing = [
        name for name in ("company_id", "experience_id", "access_token")
        if not data.get(name)
    ]
    if missing:
        raise MissingRequiredField(*missing)

    await store.upsert(
        company_id,
        {
            "experience_id": data["experience_id"],
            "access_token": data["access_token"],
            "plan": normalize_plan(data.get("plan")),
        },
    )
    logger.info("App installed for %s", company_id)


async def _handle_updated(data: Dict[str, Any], store: InstallationStore):
    company_id = data["company_id"]
    fields = {
        "experience_id": data.get("experience_id"),
        "access_token": data.get("access_token"),
        "plan": normalize_plan(data["plan"]) if data.get("plan") else None,
    }
    if not fields["access_token"] and await store.find_by_tenant_id(company_id) is None:
        raise InstallationNotFound(company_id)

    await store.upsert(company_id, fields)
    logger.info("App updated for %s", company_id)


@router.post("/whop")
async def whop_webhook(
    request: Request,
    store: InstallationStore = Depends(get_installation_store),
    shape: TenantIdShape = Depends(get_tenant_shape),
):
    """Verify and apply an installation event."""
    signature = request.headers.get("x-whop-signature")
    timestamp = request.headers.get("x-whop-timestamp")
    if not signature or not timestamp:
        raise HTTPException(status_code=401, detail="Missing signature headers")

    body = await request.body()
    if not verify_signature(get_settings().whop_webhook_secret, signature, timestamp, body):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    event = payload.get("event")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="data must be an object")

    company_id = data.get("company_id")
    if event in ("app.installed", "app.updated", "app.uninstalled"):
        if not company_id:
            raise HTTPException(status_code=400, detail="company_id required")
        if not shape.matches(company_id):
            raise HTTPException(status_code=400, detail="company_id is not a valid company id")
        set_log_context(tenant_id=company_id)

    logger.info("Whop webhook received: %s", event)

    try:
        if event == "app.installed":
            await _handle_installed(data, store)
        elif event == "app.updated":
            await _handle_updated(data, store)
        elif event == "app.uninstalled":
            # Removing the installation is an administrative action
            logger.info("App uninstalled for %s; installation kept", company_id)
        else:
            logger.info("Unhandled webhook event: %s", event)
    except WhoplyticsError as e:
        raise to_http_exception(e) from e

    return {"ok": True, "event": event}
