"""
Subscription model - one row per user, soft lifecycle via status.

Rows are created on checkout confirmation and never physically deleted.
Cancellation, refund and expiry only move the status column.
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from giftguard.db_base import Base
from giftguard.models.base import TimestampMixin


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle states. Only ACTIVE grants access."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
        unique=True,  # at most one subscription per user
        index=True,
    )
    plan = Column(String(20), nullable=False, comment="PlanTier value")
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
        index=True,
    )
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="NULL means the subscription does not expire on a schedule",
    )
    auto_renew = Column(Boolean, nullable=False, default=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="subscription")

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} plan={self.plan} status={self.status}>"
