"""Gift model. Only the columns the guard needs for limit checks."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, String

from giftguard.db_base import Base
from giftguard.models.base import TimestampMixin


class Gift(Base, TimestampMixin):
    __tablename__ = "gifts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    slug = Column(String(255), nullable=True, unique=True)
    published = Column(Boolean, nullable=False, default=False)
