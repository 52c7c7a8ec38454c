"""Installation records and plan tiers."""

from .plans import normalize_plan, plan_features, PlanFeatures
from .store import InstallationLookup, InstallationRecord, InstallationStore

__all__ = [
    "InstallationLookup",
    "InstallationRecord",
    "InstallationStore",
    "PlanFeatures",
    "normalize_plan",
    "plan_features",
]
