"""
User model - identity record for gift creators.

SECURITY:
- email is unique and always stored sanitized (lowercase, trimmed)
- password_hash is a bcrypt hash, NEVER the plaintext
- plan is a denormalized display cache written by
  EntitlementResolver.sync_user_plan(); access decisions never read it
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship, validates

from giftguard.db_base import Base
from giftguard.models.base import TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(254), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=False)
    email_verified = Column(Boolean, nullable=False, default=False)

    # Display cache only. See EntitlementResolver.sync_user_plan().
    plan = Column(String(20), nullable=True)

    failed_login_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String(45), nullable=True)

    subscription = relationship(
        "Subscription",
        back_populates="user",
        uselist=False,
    )

    @validates("email")
    def _normalize_email(self, key, value):
        return value.strip().lower() if value else value

    def __repr__(self) -> str:
        return f"<User id={self.id} email_verified={self.email_verified}>"
