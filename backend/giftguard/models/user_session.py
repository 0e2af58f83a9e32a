"""
Persisted login sessions.

The signed session token carries a session_id; the row must still exist
(and not be expired) for the token to authenticate. Deleting the row
revokes the session immediately.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from giftguard.db_base import Base
from giftguard.models.base import TimestampMixin


class UserSession(Base, TimestampMixin):
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True, comment="sha256 of the opaque session token")
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
