"""Plan tiers stored on installations and the features each unlocks."""

from dataclasses import dataclass
from typing import Optional

FREE = "free"
PRO = "pro"
BUSINESS = "business"

_ALIASES = {
    "pro": PRO,
    "professional": PRO,
    "business": BUSINESS,
    "enterprise": BUSINESS,
}


@dataclass(frozen=True)
class PlanFeatures:
    weekly_email: bool = True
    daily_email: bool = False
    discord_alerts: bool = False
    advanced_insights: bool = False
    extended_history: bool = False
    data_exports: bool = False
    priority_support: bool = False


_FEATURES = {
    FREE: PlanFeatures(),
    PRO: PlanFeatures(
        daily_email=True,
        discord_alerts=True,
        advanced_insights=True,
    ),
    BUSINESS: PlanFeatures(
        daily_email=True,
        discord_alerts=True,
        advanced_insights=True,
        extended_history=True,
        data_exports=True,
        priority_support=True,
    ),
}


def normalize_plan(plan: Optional[str]) -> str:
    """Map a stored plan string onto free / pro / business."""
    return _ALIASES.get((plan or "").strip().lower(), FREE)


def plan_features(plan: Optional[str]) -> PlanFeatures:
    return _FEATURES[normalize_plan(plan)]
