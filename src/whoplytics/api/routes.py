"""Main API routes for Whoplytics."""

from fastapi import APIRouter

from .auth import router as auth_router
from .company import router as company_router
from .experiences import router as experiences_router
from .webhooks import router as webhooks_router

# Main API router
router = APIRouter()

router.include_router(auth_router, prefix="/auth", tags=["auth"])
router.include_router(company_router, prefix="/company", tags=["company"])
router.include_router(experiences_router, prefix="/experiences", tags=["experiences"])
router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
