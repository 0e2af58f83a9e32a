"""
Database models for identity, subscriptions, sessions and auditing.

Importing this package registers every table on giftguard.db_base.Base.
"""

from giftguard.models.base import TimestampMixin, as_utc, utcnow
from giftguard.models.user import User
from giftguard.models.subscription import Subscription, SubscriptionStatus
from giftguard.models.gift import Gift
from giftguard.models.user_session import UserSession
from giftguard.models.audit_log import AuditLog

__all__ = [
    "TimestampMixin",
    "as_utc",
    "utcnow",
    "User",
    "Subscription",
    "SubscriptionStatus",
    "Gift",
    "UserSession",
    "AuditLog",
]
