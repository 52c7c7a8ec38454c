"""Tenant-scoped company endpoints."""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..auth.credentials import SessionCredential
from ..errors import WhoplyticsError
from ..installations.plans import normalize_plan, plan_features
from ..installations.store import InstallationStore
from .deps import (
    get_installation_store,
    require_session,
    require_tenant_access,
    to_http_exception,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class PlanFeaturesResponse(BaseModel):
    weekly_email: bool
    daily_email: bool
    discord_alerts: bool
    advanced_insights: bool
    extended_history: bool
    data_exports: bool
    priority_support: bool


class CompanyPlanResponse(BaseModel):
    companyId: str
    installed: bool
    plan: str
    features: PlanFeaturesResponse
    experienceId: Optional[str] = None


async def _plan_for(tenant_id: str, store: InstallationStore) -> CompanyPlanResponse:
    try:
        record = await store.find_by_tenant_id(tenant_id)
    except WhoplyticsError as e:
        raise to_http_exception(e) from e

    plan = normalize_plan(record.plan if record else None)
    features = plan_features(plan)
    return CompanyPlanResponse(
        companyId=tenant_id,
        installed=record is not None,
        plan=plan,
        features=PlanFeaturesResponse(**asdict(features)),
        experienceId=record.experience_id if record else None,
    )


@router.get("/plan", response_model=CompanyPlanResponse)
async def get_session_plan(
    credential: SessionCredential = Depends(require_session),
    store: InstallationStore = Depends(get_installation_store),
):
    """Plan of the company the session is bound to."""
    return await _plan_for(credential.tenant_id, store)


@router.get("/{company_id}/plan", response_model=CompanyPlanResponse)
async def get_company_plan(
    company_id: str,
    credential: SessionCredential = Depends(require_tenant_access),
    store: InstallationStore = Depends(get_installation_store),
):
    return await _plan_for(company_id, store)
