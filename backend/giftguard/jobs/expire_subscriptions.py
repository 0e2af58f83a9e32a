"""
Subscription expiry job.

Triggered hourly by the external cron endpoint. Lazy expiry in the resolver
only fires when a user is next evaluated; this sweep catches everyone else.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.platform.audit import AuditAction, AuditSink

logger = logging.getLogger(__name__)


class SubscriptionExpiryJob:
    """Expires every ACTIVE subscription whose end_date has passed."""

    def __init__(self, resolver: EntitlementResolver, audit_sink: Optional[AuditSink] = None):
        self.resolver = resolver
        self.audit_sink = audit_sink

    def run(self) -> dict:
        """
        Execute the sweep.

        Returns:
            Summary with started_at, completed_at, expired and errors
        """
        logger.info("Starting subscription expiry job")

        results = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "expired": 0,
            "errors": [],
        }

        try:
            results["expired"] = self.resolver.expire_overdue_subscriptions()
        except Exception as e:
            logger.error("Subscription expiry job failed", extra={"error_type": type(e).__name__})
            results["errors"].append(type(e).__name__)

        results["completed_at"] = datetime.now(timezone.utc).isoformat()

        if self.audit_sink is not None and results["expired"]:
            self.audit_sink.record(
                AuditAction.SUBSCRIPTION_EXPIRED,
                metadata={"source": "cron", "expired": results["expired"]},
            )

        logger.info(
            "Subscription expiry job completed",
            extra={"expired": results["expired"], "error_count": len(results["errors"])},
        )
        return results
