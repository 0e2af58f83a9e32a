"""
Entitlement resolution and enforcement.

Only leaf modules are re-exported here. Import the resolver, repository
and guard from their modules directly.
"""

from giftguard.entitlements.errors import (
    EntitlementDeniedError,
    EntitlementError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from giftguard.entitlements.models import CheckResult, DenialReason, ResolutionReason
from giftguard.entitlements.plan_config import PLAN_CONFIG, PlanLimits, PlanTier

__all__ = [
    "CheckResult",
    "DenialReason",
    "EntitlementDeniedError",
    "EntitlementError",
    "PLAN_CONFIG",
    "PlanLimits",
    "PlanTier",
    "ResolutionReason",
    "SubscriptionNotFoundError",
    "SubscriptionStateError",
]
