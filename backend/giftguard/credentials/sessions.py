"""
Persisted session rows backing signed session tokens.

A token only authenticates while its session row exists and has not
expired; revoking the row logs the session out immediately.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from giftguard.credentials.vault import DEFAULT_SESSION_TTL, generate_secure_token, hash_token
from giftguard.models.base import as_utc
from giftguard.models.user_session import UserSession

logger = logging.getLogger(__name__)


class SessionRepository:
    """CRUD over UserSession for a single DB session."""

    def __init__(self, db: Session):
        self.db = db

    def create_session(
        self,
        user_id: str,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[UserSession, str]:
        """
        Create a session row.

        Returns:
            (row, raw_token). Only the token's sha256 is stored.
        """
        raw_token = generate_secure_token()
        row = UserSession(
            user_id=user_id,
            token_hash=hash_token(raw_token),
            expires_at=datetime.now(timezone.utc) + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(row)
        self.db.commit()
        logger.info("Session created", extra={"user_id": user_id, "session_id": row.id})
        return row, raw_token

    def get_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[UserSession]:
        """Return a live session. Expired rows are deleted and read as missing."""
        if not session_id:
            return None
        row = self.db.get(UserSession, session_id)
        if row is None:
            return None

        now = now or datetime.now(timezone.utc)
        if as_utc(row.expires_at) <= now:
            self.db.delete(row)
            self.db.commit()
            logger.info("Expired session removed", extra={"user_id": row.user_id, "session_id": session_id})
            return None
        return row

    def revoke_session(self, session_id: str) -> bool:
        row = self.db.get(UserSession, session_id)
        if row is None:
            return False
        self.db.delete(row)
        self.db.commit()
        logger.info("Session revoked", extra={"user_id": row.user_id, "session_id": session_id})
        return True

    def revoke_all_for_user(self, user_id: str) -> int:
        count = (
            self.db.query(UserSession)
            .filter(UserSession.user_id == user_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("All sessions revoked", extra={"user_id": user_id, "count": count})
        return count

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        count = (
            self.db.query(UserSession)
            .filter(UserSession.expires_at <= now)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if count:
            logger.info("Expired sessions purged", extra={"count": count})
        return count
