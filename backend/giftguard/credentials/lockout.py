"""
Account lockout after repeated failed logins.

The 5th consecutive failure locks the account for 15 minutes. A lock that
has elapsed is cleared on the next check, and a successful login resets
the counters.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from giftguard.credentials.vault import SECURITY_CONFIG
from giftguard.models.base import as_utc
from giftguard.models.user import User
from giftguard.platform.errors import AccountLockedError

logger = logging.getLogger(__name__)


def should_lock_account(
    attempts: int,
    locked_until: Optional[datetime],
    max_attempts: int = SECURITY_CONFIG["MAX_LOGIN_ATTEMPTS"],
    now: Optional[datetime] = None,
) -> bool:
    now = now or datetime.now(timezone.utc)
    locked_until = as_utc(locked_until)
    if locked_until and now < locked_until:
        return True
    return attempts >= max_attempts


def lockout_minutes_remaining(locked_until: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole minutes (rounded up) until the lock lifts; 0 when not locked."""
    locked_until = as_utc(locked_until)
    if not locked_until:
        return 0
    now = now or datetime.now(timezone.utc)
    remaining = (locked_until - now).total_seconds()
    return math.ceil(remaining / 60) if remaining > 0 else 0


class LoginAttemptTracker:
    """Maintains User.failed_login_attempts / User.locked_until."""

    def __init__(
        self,
        max_attempts: int = SECURITY_CONFIG["MAX_LOGIN_ATTEMPTS"],
        lockout_duration: timedelta = SECURITY_CONFIG["LOCKOUT_DURATION"],
    ):
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration

    @classmethod
    def from_settings(cls, settings) -> "LoginAttemptTracker":
        """Build from SecuritySettings (MAX_LOGIN_ATTEMPTS / LOCKOUT_MINUTES)."""
        return cls(
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_minutes),
        )

    def check(self, db: Session, user: User, now: Optional[datetime] = None) -> None:
        """
        Raise AccountLockedError while the user is locked out.

        An elapsed lock is cleared (auto-unlock) and committed.
        """
        now = now or datetime.now(timezone.utc)
        if not should_lock_account(user.failed_login_attempts or 0, user.locked_until, self.max_attempts, now):
            return

        minutes = lockout_minutes_remaining(user.locked_until, now)
        if minutes > 0:
            raise AccountLockedError(minutes)

        user.failed_login_attempts = 0
        user.locked_until = None
        db.commit()
        logger.info("Account auto-unlocked", extra={"user_id": user.id})

    def record_failure(self, db: Session, user: User, now: Optional[datetime] = None) -> int:
        """
        Count a failed login. Returns the attempts left before lockout.

        Raises:
            AccountLockedError: When this failure triggers the lock
        """
        now = now or datetime.now(timezone.utc)
        attempts = (user.failed_login_attempts or 0) + 1
        locked = attempts >= self.max_attempts

        user.failed_login_attempts = attempts
        user.locked_until = now + self.lockout_duration if locked else None
        db.commit()

        if locked:
            logger.warning("Account locked after failed logins", extra={"user_id": user.id, "attempts": attempts})
            raise AccountLockedError(math.ceil(self.lockout_duration.total_seconds() / 60))

        return self.max_attempts - attempts

    def record_success(
        self,
        db: Session,
        user: User,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Reset counters after a successful login.

        Returns True when the login came from a different IP than the last one.
        """
        now = now or datetime.now(timezone.utc)
        new_device = bool(user.last_login_ip and ip_address and user.last_login_ip != ip_address)

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        user.last_login_ip = ip_address
        db.commit()
        return new_device
