"""
Subscription API routes.

The caller is always taken from the session credential; user ids are
NEVER accepted from the request body or query string.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from giftguard.api.dependencies.require_subscription import (
    get_audit_sink,
    get_resolver,
    require_authenticated_user,
)
from giftguard.entitlements.errors import SubscriptionNotFoundError, SubscriptionStateError
from giftguard.entitlements.guard import AuthenticatedUser
from giftguard.entitlements.plan_config import get_available_upgrades
from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.middleware.rate_limit import rate_limit_dependency
from giftguard.middleware.request_guards import require_allowed_origin, require_json_content_type
from giftguard.platform.audit import AuditAction, AuditSink
from giftguard.platform.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


# Response Models

class SubscriptionDetails(BaseModel):
    id: str
    plan: Optional[str]
    status: Optional[str]
    end_date: Optional[datetime]


class EffectivePlanResponse(BaseModel):
    """Live entitlement state for the caller."""
    plan: Optional[str]
    reason: str
    is_active: bool
    has_subscription: bool
    subscription: Optional[SubscriptionDetails]
    limits: Optional[dict]
    available_upgrades: List[str]


class CancelledSubscription(BaseModel):
    id: str
    plan: Optional[str]
    status: str
    end_date: Optional[datetime]
    cancelled_at: Optional[datetime]
    auto_renew: bool


class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    already_cancelled: bool
    subscription: CancelledSubscription


@router.get("", response_model=EffectivePlanResponse)
def get_subscription(
    auth: AuthenticatedUser = Depends(require_authenticated_user),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    """Return the caller's effective plan, derived from live subscription state."""
    effective = resolver.get_effective_plan(auth.user_id)

    subscription = None
    if effective.has_subscription:
        subscription = SubscriptionDetails(
            id=effective.subscription_id,
            plan=effective.subscription_plan.value if effective.subscription_plan else None,
            status=effective.subscription_status,
            end_date=effective.expires_at,
        )

    return EffectivePlanResponse(
        plan=effective.plan.value if effective.plan else None,
        reason=effective.reason.value,
        is_active=effective.is_active,
        has_subscription=effective.has_subscription,
        subscription=subscription,
        limits=effective.limits.to_dict() if effective.limits else None,
        available_upgrades=[p.value for p in get_available_upgrades(effective.plan)] if effective.plan else [],
    )


@router.post(
    "/cancel",
    response_model=CancelSubscriptionResponse,
    dependencies=[
        Depends(require_allowed_origin),
        Depends(require_json_content_type),
        Depends(rate_limit_dependency("subscription-cancel", max_requests=5, window_ms=60 * 1000)),
    ],
)
def cancel_subscription(
    request: Request,
    auth: AuthenticatedUser = Depends(require_authenticated_user),
    resolver: EntitlementResolver = Depends(get_resolver),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    """
    Turn off auto-renewal.

    The subscription stays ACTIVE, and access continues, until end_date.
    """
    try:
        result = resolver.cancel_subscription(auth.user_id)
    except SubscriptionNotFoundError as e:
        raise AppError(code=e.error_code, message="You do not have a subscription", status_code=404)
    except SubscriptionStateError as e:
        raise AppError(code=e.error_code, message=e.message, status_code=400)

    record = result.subscription
    if not result.already_cancelled:
        audit_sink.record_from_request(
            request,
            AuditAction.SUBSCRIPTION_CANCELLED,
            user_id=auth.user_id,
            metadata={
                "subscription_id": record.id,
                "plan": record.plan.value if record.plan else None,
                "end_date": record.end_date.isoformat() if record.end_date else None,
            },
        )

    message = (
        "Your subscription was already cancelled"
        if result.already_cancelled
        else "Subscription cancelled. You keep access until the end of the paid period."
    )
    return CancelSubscriptionResponse(
        success=True,
        message=message,
        already_cancelled=result.already_cancelled,
        subscription=CancelledSubscription(
            id=record.id,
            plan=record.plan.value if record.plan else None,
            status=record.status,
            end_date=record.end_date,
            cancelled_at=record.cancelled_at,
            auto_renew=record.auto_renew,
        ),
    )
