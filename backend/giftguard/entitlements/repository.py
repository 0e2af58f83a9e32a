"""
Subscription data access for the entitlement resolver.

Every read returns a SubscriptionRecord snapshot rather than the ORM row,
and status transitions are conditional UPDATEs so concurrent callers can
race on them safely.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from giftguard.entitlements.models import SubscriptionRecord
from giftguard.entitlements.plan_config import PlanTier, parse_plan
from giftguard.models.base import as_utc
from giftguard.models.gift import Gift
from giftguard.models.subscription import Subscription, SubscriptionStatus
from giftguard.models.user import User

logger = logging.getLogger(__name__)


def to_record(subscription: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=subscription.id,
        user_id=subscription.user_id,
        plan=parse_plan(subscription.plan),
        status=subscription.status,
        end_date=as_utc(subscription.end_date),
        start_date=as_utc(subscription.start_date),
        auto_renew=bool(subscription.auto_renew),
        cancelled_at=as_utc(subscription.cancelled_at),
    )


class SubscriptionRepository:
    """Subscription and gift-count queries over one DB session."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .first()
        )
        return to_record(subscription) if subscription else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def count_gifts(self, user_id: str) -> int:
        return (
            self.db.query(func.count(Gift.id))
            .filter(Gift.user_id == user_id)
            .scalar()
        ) or 0

    def find_overdue(self, now: datetime) -> list[SubscriptionRecord]:
        """ACTIVE subscriptions whose end_date is strictly before now."""
        rows = (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date.isnot(None),
                Subscription.end_date < now,
            )
            .all()
        )
        return [to_record(row) for row in rows]

    def mark_expired(self, subscription_id: str, user_id: str, now: Optional[datetime] = None) -> bool:
        """
        Transition ACTIVE -> EXPIRED and clear the user's plan cache.

        Idempotent: returns False (and changes nothing) when the row is no
        longer ACTIVE or its end_date is no longer in the past.
        """
        now = now or datetime.now(timezone.utc)
        result = self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date.isnot(None),
                Subscription.end_date < now,
            )
            .values(status=SubscriptionStatus.EXPIRED.value, auto_renew=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False

        self._clear_user_plan(user_id)
        self.db.commit()
        logger.info(
            "Subscription expired",
            extra={"subscription_id": subscription_id, "user_id": user_id},
        )
        return True

    def mark_refunded(self, subscription_id: str, user_id: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        result = self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.user_id == user_id)
            .values(
                status=SubscriptionStatus.REFUNDED.value,
                auto_renew=False,
                cancelled_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False

        self._clear_user_plan(user_id)
        self.db.commit()
        logger.info(
            "Subscription refunded",
            extra={"subscription_id": subscription_id, "user_id": user_id},
        )
        return True

    def mark_cancel_requested(self, subscription_id: str, now: Optional[datetime] = None) -> Optional[SubscriptionRecord]:
        """Turn off auto-renew. Status stays as-is until end_date."""
        now = now or datetime.now(timezone.utc)
        subscription = self.db.get(Subscription, subscription_id)
        if subscription is None:
            return None
        subscription.auto_renew = False
        subscription.cancelled_at = now
        self.db.commit()
        return to_record(subscription)

    def set_user_plan(self, user_id: str, plan: Optional[PlanTier]) -> None:
        user = self.db.get(User, user_id)
        if user is None:
            return
        user.plan = plan.value if plan else None
        self.db.commit()

    def _clear_user_plan(self, user_id: str) -> None:
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(plan=None)
            .execution_options(synchronize_session=False)
        )
