"""SQLAlchemy declarative base shared by all giftguard models."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
