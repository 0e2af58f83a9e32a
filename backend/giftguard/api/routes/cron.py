"""
Cron-triggered maintenance endpoints.

SECURITY: callers must send Authorization: Bearer <CRON_SECRET>.
An unset CRON_SECRET disables the endpoint (500) rather than leaving it open.
"""

import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from giftguard.api.dependencies.require_subscription import get_audit_sink, get_resolver
from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.jobs.expire_subscriptions import SubscriptionExpiryJob
from giftguard.platform.audit import AuditSink
from giftguard.platform.errors import AppError, AuthenticationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


class ExpireSubscriptionsResponse(BaseModel):
    success: bool
    expired: int
    timestamp: datetime


def verify_cron_secret(request: Request) -> None:
    settings = getattr(request.app.state, "settings", None)
    cron_secret = settings.cron_secret if settings is not None else None
    if not cron_secret:
        logger.error("CRON_SECRET is not configured")
        raise AppError(code="CRON_NOT_CONFIGURED", message="Cron is not configured", status_code=500)

    auth_header = request.headers.get("Authorization") or ""
    expected = f"Bearer {cron_secret}"
    if not hmac.compare_digest(auth_header.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Unauthorized cron invocation", extra={"path": request.url.path})
        raise AuthenticationError("Unauthorized")


@router.get(
    "/expire-subscriptions",
    response_model=ExpireSubscriptionsResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def expire_subscriptions(
    resolver: EntitlementResolver = Depends(get_resolver),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    results = SubscriptionExpiryJob(resolver, audit_sink).run()
    if results["errors"]:
        raise AppError(code="INTERNAL_ERROR", message="An unexpected error occurred", status_code=500)
    return ExpireSubscriptionsResponse(
        success=True,
        expired=results["expired"],
        timestamp=datetime.now(timezone.utc),
    )
