"""
Typed results and snapshots for entitlement decisions.

Leaf module: no database or HTTP imports. SubscriptionRecord deliberately
has no field for the denormalized User.plan cache, so nothing that makes an
access decision from it can read that cache.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from giftguard.entitlements.plan_config import PlanLimits, PlanTier


class ResolutionReason(str, Enum):
    """Why the resolver produced its plan. Only ACTIVE carries a plan."""
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    ACTIVE = "ACTIVE"


class DenialReason(str, Enum):
    """
    Request-level denial reasons.

    Values are part of the HTTP contract; never rename one.
    """
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"


@dataclass(frozen=True)
class SubscriptionRecord:
    """Read-only snapshot of a Subscription row."""
    id: str
    user_id: str
    plan: Optional[PlanTier]
    status: str
    end_date: Optional[datetime]
    start_date: Optional[datetime] = None
    auto_renew: bool = True
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True)
class EffectivePlanResult:
    plan: Optional[PlanTier]
    limits: Optional[PlanLimits]
    is_active: bool
    has_subscription: bool
    subscription_id: Optional[str]
    subscription_plan: Optional[PlanTier]
    subscription_status: Optional[str]
    expires_at: Optional[datetime]
    reason: ResolutionReason


@dataclass(frozen=True)
class PhotoLimitResult:
    allowed: bool
    limit: int
    remaining: int
    requires_upgrade: bool
    requires_subscription: bool


@dataclass(frozen=True)
class MusicLimitResult:
    allowed: bool
    limit: int
    remaining: int
    requires_upgrade: bool
    feature_available: bool
    requires_subscription: bool


@dataclass(frozen=True)
class GiftLimitResult:
    allowed: bool
    limit: int
    current_count: int
    remaining: int
    requires_subscription: bool
    reason: Optional[ResolutionReason] = None


@dataclass(frozen=True)
class PlanAccessResult:
    has_access: bool
    current_plan: Optional[PlanTier]
    message: str
    requires_subscription: bool


@dataclass(frozen=True)
class CancellationResult:
    subscription: SubscriptionRecord
    already_cancelled: bool


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    plan: Optional[PlanTier]
    status: Optional[str]
    end_date: Optional[datetime]


@dataclass(frozen=True)
class UserSnapshot:
    id: str
    email: str
    plan: Optional[str]  # display cache, never used for decisions
    email_verified: bool


@dataclass(frozen=True)
class CheckResult:
    allowed: bool
    reason: Optional[DenialReason] = None
    user_id: Optional[str] = None
    subscription: Optional[SubscriptionSnapshot] = None
    user: Optional[UserSnapshot] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.reason is not None:
            data["reason"] = self.reason.value
        return data
