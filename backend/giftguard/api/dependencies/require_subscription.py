"""
Subscription check dependencies.

FastAPI dependencies that block access when the caller has no active
subscription. Guard denials are raised as EntitlementDeniedError and
rendered by the handler registered in create_app(), so the response body
is exactly the mapped {error, code, requiresSubscription} object.
"""

import logging
from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from giftguard.entitlements.errors import EntitlementDeniedError
from giftguard.entitlements.guard import AuthenticatedUser, EntitlementGuard, to_http_response
from giftguard.entitlements.models import CheckResult, DenialReason
from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.platform.audit import AuditSink
from giftguard.platform.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)


def _app_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error("Application dependency not configured", extra={"dependency": name})
        raise ServiceUnavailableError()
    return value


def get_entitlement_guard(request: Request) -> EntitlementGuard:
    return _app_state(request, "entitlement_guard")


def get_resolver(request: Request) -> EntitlementResolver:
    return _app_state(request, "resolver")


def get_audit_sink(request: Request) -> AuditSink:
    return _app_state(request, "audit_sink")


def get_db_session(request: Request) -> Generator[Session, None, None]:
    session_factory = _app_state(request, "session_factory")
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def require_active_subscription(request: Request) -> CheckResult:
    """
    Dependency for privileged routes.

    Returns the allowed CheckResult (with user and subscription snapshots)
    or raises EntitlementDeniedError with the mapped HTTP response.
    """
    guard = get_entitlement_guard(request)
    result = guard.require_active_subscription(request)
    if not result.allowed:
        status_code, body = to_http_response(result)
        raise EntitlementDeniedError(status_code, body)
    return result


def require_authenticated_user(request: Request) -> AuthenticatedUser:
    """
    Dependency for routes that need a caller but not an active subscription
    (e.g. viewing or cancelling one's own subscription).
    """
    session_guard = _app_state(request, "session_guard")
    auth = session_guard.authenticate(request)
    if auth is None:
        status_code, body = to_http_response(
            CheckResult(allowed=False, reason=DenialReason.NOT_AUTHENTICATED)
        )
        raise EntitlementDeniedError(status_code, body)
    return auth
