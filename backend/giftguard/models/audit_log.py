"""Canonical audit log model alias."""

from giftguard.platform.audit import AuditLog

__all__ = ["AuditLog"]
