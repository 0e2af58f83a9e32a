"""
Plan limit checks for the content editor.

Every route requires an active subscription; each check then re-resolves
the plan from live subscription state.
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from giftguard.api.dependencies.require_subscription import get_resolver, require_active_subscription
from giftguard.entitlements.models import CheckResult
from giftguard.entitlements.plan_config import PlanTier, resolve_feature_name
from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.platform.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/limits", tags=["limits"])


class PhotoLimitResponse(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    requires_upgrade: bool
    requires_subscription: bool


class MusicLimitResponse(PhotoLimitResponse):
    feature_available: bool


class GiftLimitResponse(BaseModel):
    allowed: bool
    limit: int
    current_count: int
    remaining: int
    requires_subscription: bool
    reason: Optional[str] = None


class FeatureAccessResponse(BaseModel):
    feature: str
    has_access: bool


class PlanAccessResponse(BaseModel):
    has_access: bool
    current_plan: Optional[str]
    message: str
    requires_subscription: bool


@router.get("/photos", response_model=PhotoLimitResponse)
def check_photo_limit(
    current_count: int = Query(0, ge=0),
    check: CheckResult = Depends(require_active_subscription),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    result = resolver.can_add_photo(check.user_id, current_count)
    return PhotoLimitResponse(**asdict(result))


@router.get("/music", response_model=MusicLimitResponse)
def check_music_limit(
    current_count: int = Query(0, ge=0),
    check: CheckResult = Depends(require_active_subscription),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    result = resolver.can_add_music(check.user_id, current_count)
    return MusicLimitResponse(**asdict(result))


@router.get("/gifts", response_model=GiftLimitResponse)
def check_gift_limit(
    check: CheckResult = Depends(require_active_subscription),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    result = resolver.can_create_gift(check.user_id)
    return GiftLimitResponse(
        allowed=result.allowed,
        limit=result.limit,
        current_count=result.current_count,
        remaining=result.remaining,
        requires_subscription=result.requires_subscription,
        reason=result.reason.value if result.reason else None,
    )


@router.get("/features/{feature}", response_model=FeatureAccessResponse)
def check_feature_access(
    feature: str,
    check: CheckResult = Depends(require_active_subscription),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    if resolve_feature_name(feature) is None:
        raise ValidationError("Unknown feature", details={"feature": feature})
    return FeatureAccessResponse(feature=feature, has_access=resolver.has_feature_access(check.user_id, feature))


@router.get("/plans/{required_plan}", response_model=PlanAccessResponse)
def check_plan_access(
    required_plan: PlanTier,
    check: CheckResult = Depends(require_active_subscription),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    result = resolver.validate_plan_access(check.user_id, required_plan)
    return PlanAccessResponse(
        has_access=result.has_access,
        current_plan=result.current_plan.value if result.current_plan else None,
        message=result.message,
        requires_subscription=result.requires_subscription,
    )
