"""
EntitlementResolver: the single source of truth for a user's effective plan.

Resolution (strict, in order):
1. No subscription                      -> no plan, NO_SUBSCRIPTION
2. status != ACTIVE                     -> no plan, SUBSCRIPTION_INACTIVE
3. ACTIVE with end_date in the past     -> no plan, SUBSCRIPTION_EXPIRED,
                                           and a detached ACTIVE -> EXPIRED write
4. Otherwise                            -> subscription.plan, ACTIVE, with limits

The denormalized User.plan column is never read here. sync_user_plan()
writes it; nothing in this module trusts it.

Every derived check re-resolves the plan and fails closed.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from giftguard.entitlements.errors import SubscriptionNotFoundError, SubscriptionStateError
from giftguard.entitlements.models import (
    CancellationResult,
    EffectivePlanResult,
    GiftLimitResult,
    MusicLimitResult,
    PhotoLimitResult,
    PlanAccessResult,
    ResolutionReason,
    SubscriptionRecord,
)
from giftguard.entitlements.plan_config import (
    PlanTier,
    get_plan_limits,
    is_unlimited,
    plan_has_feature,
    plan_rank,
    remaining_slots,
)
from giftguard.entitlements.repository import SubscriptionRepository
from giftguard.models.subscription import SubscriptionStatus
from giftguard.platform.tasks import DetachedTaskRunner

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_effective_plan(record: Optional[SubscriptionRecord], now: datetime) -> EffectivePlanResult:
    """
    Pure resolution over a subscription snapshot.

    Takes no user object at all, so the plan cache cannot influence it.
    """
    if record is None:
        return EffectivePlanResult(
            plan=None,
            limits=None,
            is_active=False,
            has_subscription=False,
            subscription_id=None,
            subscription_plan=None,
            subscription_status=None,
            expires_at=None,
            reason=ResolutionReason.NO_SUBSCRIPTION,
        )

    if record.status != SubscriptionStatus.ACTIVE.value:
        return EffectivePlanResult(
            plan=None,
            limits=None,
            is_active=False,
            has_subscription=True,
            subscription_id=record.id,
            subscription_plan=record.plan,
            subscription_status=record.status,
            expires_at=record.end_date,
            reason=ResolutionReason.SUBSCRIPTION_INACTIVE,
        )

    if record.end_date is not None and record.end_date < now:
        return EffectivePlanResult(
            plan=None,
            limits=None,
            is_active=False,
            has_subscription=True,
            subscription_id=record.id,
            subscription_plan=record.plan,
            subscription_status=SubscriptionStatus.EXPIRED.value,
            expires_at=record.end_date,
            reason=ResolutionReason.SUBSCRIPTION_EXPIRED,
        )

    if record.plan is None:
        # ACTIVE row with an unknown plan value: no limits to grant.
        logger.error(
            "Active subscription has unrecognized plan",
            extra={"subscription_id": record.id, "user_id": record.user_id},
        )
        return EffectivePlanResult(
            plan=None,
            limits=None,
            is_active=False,
            has_subscription=True,
            subscription_id=record.id,
            subscription_plan=None,
            subscription_status=record.status,
            expires_at=record.end_date,
            reason=ResolutionReason.SUBSCRIPTION_INACTIVE,
        )

    return EffectivePlanResult(
        plan=record.plan,
        limits=get_plan_limits(record.plan),
        is_active=True,
        has_subscription=True,
        subscription_id=record.id,
        subscription_plan=record.plan,
        subscription_status=record.status,
        expires_at=record.end_date,
        reason=ResolutionReason.ACTIVE,
    )


class EntitlementResolver:
    """
    Resolves effective plans and plan-limit checks from live subscription state.

    Each call opens its own short-lived DB session. The lazy expiry write
    runs on the task runner with a separate session so it never blocks or
    fails the read that triggered it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        task_runner=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._runner = task_runner or DetachedTaskRunner()
        self._clock = clock

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def get_effective_plan(self, user_id: str) -> EffectivePlanResult:
        with self._session_factory() as db:
            record = SubscriptionRepository(db).get_by_user_id(user_id)

        result = resolve_effective_plan(record, self._clock())

        if result.reason == ResolutionReason.SUBSCRIPTION_EXPIRED:
            self._spawn_expiry(record.id, user_id)

        return result

    def _spawn_expiry(self, subscription_id: str, user_id: str) -> None:
        try:
            self._runner.spawn(
                self._expire_subscription,
                subscription_id,
                user_id,
                name="expire_subscription",
            )
        except Exception as e:
            # Runner rejected the task; the cron sweep will catch it.
            logger.error(
                "Failed to schedule subscription expiry",
                extra={"subscription_id": subscription_id, "user_id": user_id, "error_type": type(e).__name__},
            )

    def _expire_subscription(self, subscription_id: str, user_id: str) -> bool:
        with self._session_factory() as db:
            return SubscriptionRepository(db).mark_expired(subscription_id, user_id, now=self._clock())

    # ------------------------------------------------------------------
    # Derived checks
    # ------------------------------------------------------------------

    def can_add_photo(self, user_id: str, current_count: int) -> PhotoLimitResult:
        effective = self.get_effective_plan(user_id)
        if not effective.is_active or effective.limits is None:
            return PhotoLimitResult(
                allowed=False,
                limit=0,
                remaining=0,
                requires_upgrade=False,
                requires_subscription=True,
            )

        max_photos = effective.limits.max_photos_per_gift
        if is_unlimited(max_photos):
            return PhotoLimitResult(
                allowed=True,
                limit=max_photos,
                remaining=max_photos,
                requires_upgrade=False,
                requires_subscription=False,
            )

        return PhotoLimitResult(
            allowed=current_count < max_photos,
            limit=max_photos,
            remaining=remaining_slots(max_photos, current_count),
            requires_upgrade=current_count >= max_photos,
            requires_subscription=False,
        )

    def can_add_music(self, user_id: str, current_count: int) -> MusicLimitResult:
        effective = self.get_effective_plan(user_id)
        if not effective.is_active or effective.limits is None:
            return MusicLimitResult(
                allowed=False,
                limit=0,
                remaining=0,
                requires_upgrade=False,
                feature_available=False,
                requires_subscription=True,
            )

        max_music = effective.limits.max_music_per_gift
        if max_music == 0:
            # Not part of this plan at all.
            return MusicLimitResult(
                allowed=False,
                limit=0,
                remaining=0,
                requires_upgrade=True,
                feature_available=False,
                requires_subscription=False,
            )

        if is_unlimited(max_music):
            return MusicLimitResult(
                allowed=True,
                limit=max_music,
                remaining=max_music,
                requires_upgrade=False,
                feature_available=True,
                requires_subscription=False,
            )

        return MusicLimitResult(
            allowed=current_count < max_music,
            limit=max_music,
            remaining=remaining_slots(max_music, current_count),
            requires_upgrade=current_count >= max_music,
            feature_available=True,
            requires_subscription=False,
        )

    def can_create_gift(self, user_id: str) -> GiftLimitResult:
        effective = self.get_effective_plan(user_id)
        if not effective.is_active or effective.limits is None:
            return GiftLimitResult(
                allowed=False,
                limit=0,
                current_count=0,
                remaining=0,
                requires_subscription=True,
                reason=effective.reason,
            )

        with self._session_factory() as db:
            current_count = SubscriptionRepository(db).count_gifts(user_id)

        max_gifts = effective.limits.max_gifts
        return GiftLimitResult(
            allowed=is_unlimited(max_gifts) or current_count < max_gifts,
            limit=max_gifts,
            current_count=current_count,
            remaining=remaining_slots(max_gifts, current_count),
            requires_subscription=False,
        )

    def has_feature_access(self, user_id: str, feature: str) -> bool:
        effective = self.get_effective_plan(user_id)
        if not effective.is_active or effective.plan is None:
            return False
        return plan_has_feature(effective.plan, feature)

    def validate_plan_access(self, user_id: str, required_plan: PlanTier) -> PlanAccessResult:
        effective = self.get_effective_plan(user_id)
        if not effective.is_active or effective.plan is None:
            return PlanAccessResult(
                has_access=False,
                current_plan=None,
                message="You need an active subscription to access this resource",
                requires_subscription=True,
            )

        if plan_rank(effective.plan) >= plan_rank(required_plan):
            return PlanAccessResult(
                has_access=True,
                current_plan=effective.plan,
                message="Access granted",
                requires_subscription=False,
            )

        return PlanAccessResult(
            has_access=False,
            current_plan=effective.plan,
            message=f"This feature requires the {required_plan.value} plan or higher",
            requires_subscription=False,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sync_user_plan(self, user_id: str) -> Optional[PlanTier]:
        """Write the resolved plan into the User.plan display cache."""
        effective = self.get_effective_plan(user_id)
        with self._session_factory() as db:
            SubscriptionRepository(db).set_user_plan(user_id, effective.plan)
        return effective.plan

    def expire_overdue_subscriptions(self) -> int:
        """
        Expire every ACTIVE subscription past its end_date.

        A failure on one subscription is logged and does not stop the sweep.
        Returns the number of subscriptions this call transitioned.
        """
        now = self._clock()
        with self._session_factory() as db:
            overdue = SubscriptionRepository(db).find_overdue(now)

        expired = 0
        for record in overdue:
            try:
                with self._session_factory() as db:
                    if SubscriptionRepository(db).mark_expired(record.id, record.user_id, now=now):
                        expired += 1
            except Exception as e:
                logger.error(
                    "Failed to expire subscription",
                    extra={"subscription_id": record.id, "user_id": record.user_id, "error_type": type(e).__name__},
                )

        logger.info("Overdue subscription sweep finished", extra={"found": len(overdue), "expired": expired})
        return expired

    def revoke_subscription_on_refund(self, subscription_id: str, user_id: str) -> bool:
        with self._session_factory() as db:
            return SubscriptionRepository(db).mark_refunded(subscription_id, user_id, now=self._clock())

    def cancel_subscription(self, user_id: str) -> CancellationResult:
        """
        Stop auto-renewal. Access continues until end_date.

        Raises:
            SubscriptionNotFoundError: User has no subscription
            SubscriptionStateError: Subscription already expired
        """
        with self._session_factory() as db:
            repo = SubscriptionRepository(db)
            record = repo.get_by_user_id(user_id)
            if record is None:
                raise SubscriptionNotFoundError(user_id)

            if record.status == SubscriptionStatus.EXPIRED.value:
                raise SubscriptionStateError(record.id, record.status, "Your subscription has already expired")

            if not record.auto_renew or record.cancelled_at is not None:
                return CancellationResult(subscription=record, already_cancelled=True)

            updated = repo.mark_cancel_requested(record.id, now=self._clock())
            if updated is None:
                raise SubscriptionNotFoundError(user_id)

        logger.info(
            "Subscription auto-renew cancelled",
            extra={"subscription_id": record.id, "user_id": user_id},
        )
        return CancellationResult(subscription=updated, already_cancelled=False)
