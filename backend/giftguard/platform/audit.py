"""
Audit logging for security-relevant events.

CRITICAL SECURITY REQUIREMENTS:
- Audit logs MUST be append-only (no UPDATE/DELETE)
- Events include: user_id (nullable for pre-auth events), action, IP,
  user_agent, metadata, timestamp
- PII fields MUST be redacted before persistence
- Writing is best-effort: failures fall back to the secondary
  "audit.fallback" logger and NEVER propagate into the request path
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy import JSON, Column, DateTime, Index, String, Text
from sqlalchemy.orm import Session

from giftguard.db_base import Base

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")


class AuditAction(str, Enum):
    """
    Enumeration of all auditable actions.

    Values are persisted; never rename one without a data migration.
    """
    # Authentication
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SIGNUP = "signup"

    # Password
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"

    # Email
    EMAIL_VERIFIED = "email_verified"
    EMAIL_VERIFICATION_SENT = "email_verification_sent"

    # Account security
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    SESSION_CREATED = "session_created"
    SESSION_DELETED = "session_deleted"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    RATE_LIMIT_TRIGGERED = "rate_limit_triggered"

    # Profile
    PROFILE_UPDATE = "profile_update"

    # Gifts
    CREATE_GIFT = "create_gift"
    UPDATE_GIFT = "update_gift"
    DELETE_GIFT = "delete_gift"
    PUBLISH_GIFT = "publish_gift"
    UNPUBLISH_GIFT = "unpublish_gift"

    # Media
    ADD_PHOTO = "add_photo"
    DELETE_PHOTO = "delete_photo"
    ADD_MUSIC = "add_music"
    DELETE_MUSIC = "delete_music"

    # Subscriptions and payments
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_REFUNDED = "subscription_refunded"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"

    # Entitlements
    ENTITLEMENT_DENIED = "entitlement_denied"


# Sensitive metadata keys and how each is masked. None means fully replaced.
_PARTIAL_MASKS: dict[str, Callable[[str], Optional[str]]] = {
    "email": lambda v: f"***@{v.split('@', 1)[1]}" if "@" in v else None,
    "phone": lambda v: f"***{v[-4:]}" if len(v) >= 4 else None,
    "phone_number": lambda v: f"***{v[-4:]}" if len(v) >= 4 else None,
}


class PIIRedactor:
    """
    Masks sensitive keys in audit metadata, at any nesting depth.

    Emails keep their domain and phone numbers their last four digits;
    everything else on the list becomes "[REDACTED]". Returns a copy.
    """

    SENSITIVE_KEYS = frozenset({
        "email", "phone", "phone_number",
        "password", "new_password", "current_password",
        "token", "session_token", "reset_token", "verification_token", "verification_code",
        "secret", "credential", "credentials",
        "credit_card", "card_number", "cvv",
        "document", "cpf",
    })
    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: cls._redact_entry(key, value) for key, value in data.items()}
        if isinstance(data, list):
            return [cls.redact(item) for item in data]
        return data

    @classmethod
    def _redact_entry(cls, key: str, value: Any) -> Any:
        name = key.lower()
        if name not in cls.SENSITIVE_KEYS:
            return cls.redact(value)
        mask = _PARTIAL_MASKS.get(name)
        if mask is not None and value:
            masked = mask(str(value))
            if masked is not None:
                return masked
        return cls.REDACTION_MARKER


class AuditLog(Base):
    """
    Audit log database model.

    CRITICAL: This table is append-only. This module never issues UPDATE or
    DELETE against it.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=True, index=True)  # NULL for pre-auth events
    action = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 max length
    user_agent = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    correlation_id = Column(String(36), nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
    )


@dataclass
class AuditEvent:
    """
    Audit event data structure.

    PII in metadata is redacted when converted for persistence.
    """
    action: AuditAction
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def action_value(self) -> str:
        return self.action.value if isinstance(self.action, AuditAction) else str(self.action)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion with PII redaction."""
        return {
            "user_id": self.user_id,
            "action": self.action_value,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "event_metadata": PIIRedactor.redact(self.metadata) if self.metadata else None,
            "correlation_id": self.correlation_id,
            "created_at": self.timestamp,
        }


def get_client_ip(request: Request) -> str:
    """
    Client IP from trusted proxy headers.

    First X-Forwarded-For entry, then X-Real-IP, else "unknown".
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("User-Agent") or "unknown"


def extract_client_info(request: Request) -> tuple[str, str]:
    """Extract (client IP, user agent) from request."""
    return get_client_ip(request), get_user_agent(request)


def write_audit_log_sync(db: Session, event: AuditEvent) -> Optional[AuditLog]:
    """
    Append an audit event to the database.

    On failure, writes to the fallback logger and returns None
    (never crashes the caller).
    """
    audit_id = str(uuid.uuid4())
    try:
        audit_log = AuditLog(id=audit_id, **event.to_dict())
        db.add(audit_log)
        db.commit()

        logger.info(
            "Audit event recorded",
            extra={
                "audit_id": audit_id,
                "user_id": event.user_id,
                "action": event.action_value,
                "correlation_id": event.correlation_id,
            }
        )
        return audit_log

    except Exception as e:
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.debug("Audit rollback failed", extra={"error_type": type(rollback_error).__name__})

        _write_fallback_log(event, audit_id, type(e).__name__)
        return None


def _write_fallback_log(event: AuditEvent, audit_id: str, error_reason: str) -> None:
    """Write audit event to fallback logger when the primary store fails."""
    fallback_entry = {
        "event_id": audit_id,
        "user_id": event.user_id,
        "action": event.action_value,
        "timestamp": event.timestamp.isoformat(),
        "correlation_id": event.correlation_id,
        "metadata": PIIRedactor.redact(event.metadata),
        "ip_address": event.ip_address,
        "fallback_reason": error_reason,
    }
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(fallback_entry, default=str)},
    )


def get_user_audit_logs(db: Session, user_id: str, limit: int = 50) -> list[AuditLog]:
    """Most recent audit entries for a user, newest first."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.user_id == user_id)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
        .all()
    )


class AuditSink:
    """
    Best-effort, non-blocking audit recorder.

    Each write runs as a detached task with its own session so it cannot
    block or fail the request that produced it.
    """

    def __init__(self, session_factory: Callable[[], Session], task_runner):
        self._session_factory = session_factory
        self._runner = task_runner

    def record(
        self,
        action: AuditAction,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            action=action,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata or {},
            correlation_id=correlation_id or str(uuid.uuid4()),
        )
        try:
            self._runner.spawn(self._persist, event, name=f"audit:{event.action_value}")
        except Exception as e:
            # Runner rejected the task (e.g. shut down).
            _write_fallback_log(event, str(uuid.uuid4()), type(e).__name__)

    def record_from_request(
        self,
        request: Request,
        action: AuditAction,
        user_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record an event, pulling IP, user agent and correlation ID from the request."""
        ip_address, user_agent = extract_client_info(request)
        correlation_id = getattr(request.state, "correlation_id", None) or request.headers.get("X-Correlation-ID")
        self.record(
            action=action,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
            correlation_id=correlation_id,
        )

    def _persist(self, event: AuditEvent) -> None:
        try:
            db = self._session_factory()
        except Exception as e:
            _write_fallback_log(event, str(uuid.uuid4()), type(e).__name__)
            return
        try:
            write_audit_log_sync(db, event)
        finally:
            db.close()
