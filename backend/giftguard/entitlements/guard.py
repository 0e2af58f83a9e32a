"""
Request-level authentication and subscription enforcement.

SessionGuard identifies the caller from the session credential.
EntitlementGuard runs the strictly ordered check used by privileged routes:

1. authenticate          -> NOT_AUTHENTICATED
2. load user             -> NOT_AUTHENTICATED when the id no longer exists
3. email verified        -> EMAIL_NOT_VERIFIED
4. resolve subscription  -> NO_SUBSCRIPTION / SUBSCRIPTION_INACTIVE /
                            SUBSCRIPTION_EXPIRED

Denials are CheckResults, not exceptions. to_http_response() maps every
DenialReason to exactly one status code and fixed user-safe message.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import Request, status
from sqlalchemy.orm import Session

from giftguard.credentials.sessions import SessionRepository
from giftguard.credentials.vault import CredentialVault
from giftguard.entitlements.models import (
    CheckResult,
    DenialReason,
    ResolutionReason,
    SubscriptionSnapshot,
    UserSnapshot,
)
from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.models.user import User
from giftguard.platform.audit import AuditAction, AuditSink

logger = logging.getLogger(__name__)


SESSION_COOKIE_NAME = "session"


DENIAL_RESPONSES: dict[DenialReason, tuple[int, str]] = {
    DenialReason.NOT_AUTHENTICATED: (
        status.HTTP_401_UNAUTHORIZED,
        "Please log in to continue",
    ),
    DenialReason.NO_SUBSCRIPTION: (
        status.HTTP_403_FORBIDDEN,
        "You need an active subscription to access this resource",
    ),
    DenialReason.SUBSCRIPTION_INACTIVE: (
        status.HTTP_403_FORBIDDEN,
        "Your subscription is not active. Renew to continue.",
    ),
    DenialReason.SUBSCRIPTION_EXPIRED: (
        status.HTTP_403_FORBIDDEN,
        "Your subscription has expired. Renew to continue.",
    ),
    DenialReason.EMAIL_NOT_VERIFIED: (
        status.HTTP_403_FORBIDDEN,
        "Verify your email before continuing",
    ),
}

_unmapped = set(DenialReason) - set(DENIAL_RESPONSES)
if _unmapped:
    raise RuntimeError(f"DenialReason values without an HTTP response: {sorted(r.value for r in _unmapped)}")


_RESOLUTION_TO_DENIAL = {
    ResolutionReason.NO_SUBSCRIPTION: DenialReason.NO_SUBSCRIPTION,
    ResolutionReason.SUBSCRIPTION_INACTIVE: DenialReason.SUBSCRIPTION_INACTIVE,
    ResolutionReason.SUBSCRIPTION_EXPIRED: DenialReason.SUBSCRIPTION_EXPIRED,
}


def to_http_response(result: CheckResult) -> tuple[int, dict[str, Any]]:
    """
    Map a denied CheckResult to (status_code, body).

    Raises:
        ValueError: If called with an allowed result
    """
    if result.allowed or result.reason is None:
        raise ValueError("to_http_response requires a denied CheckResult")

    status_code, message = DENIAL_RESPONSES[result.reason]
    return status_code, {
        "error": message,
        "code": result.reason.value,
        "requiresSubscription": True,
    }


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: str
    session_id: Optional[str] = None


def extract_session_token(request: Request) -> Optional[str]:
    """Session cookie first, then an Authorization: Bearer header."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        bearer = auth_header[7:].strip()
        return bearer or None
    return None


class SessionGuard:
    """
    Identifies the caller from the session credential.

    With a session factory configured, the token's session_id must also
    match a live persisted session for the same user, so revoked sessions
    stop authenticating immediately.
    """

    def __init__(
        self,
        vault: CredentialVault,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.vault = vault
        self._session_factory = session_factory

    def authenticate(self, request: Request) -> Optional[AuthenticatedUser]:
        token = extract_session_token(request)
        if not token:
            return None

        claims = self.vault.verify_session_token(token)
        if not claims:
            return None

        user_id = str(claims["user_id"])
        session_id = claims.get("session_id")

        if self._session_factory is not None:
            if not session_id:
                return None
            with self._session_factory() as db:
                row = SessionRepository(db).get_session(str(session_id))
                if row is None:
                    logger.info("Session not found or expired", extra={"user_id": user_id})
                    return None
                if row.user_id != user_id:
                    logger.warning("Session user mismatch", extra={"user_id": user_id})
                    return None

        return AuthenticatedUser(
            user_id=user_id,
            email=str(claims.get("email", "")),
            session_id=str(session_id) if session_id else None,
        )


class EntitlementGuard:
    """Combines SessionGuard and EntitlementResolver into one allow/deny decision."""

    def __init__(
        self,
        session_guard: SessionGuard,
        resolver: EntitlementResolver,
        session_factory: Callable[[], Session],
        audit_sink: Optional[AuditSink] = None,
    ):
        self.session_guard = session_guard
        self.resolver = resolver
        self._session_factory = session_factory
        self._audit = audit_sink

    def require_active_subscription(self, request: Request) -> CheckResult:
        auth = self.session_guard.authenticate(request)
        if auth is None:
            return self._deny(request, CheckResult(allowed=False, reason=DenialReason.NOT_AUTHENTICATED))

        with self._session_factory() as db:
            user = db.get(User, auth.user_id)
            if user is None:
                return self._deny(request, CheckResult(allowed=False, reason=DenialReason.NOT_AUTHENTICATED))
            user_snapshot = UserSnapshot(
                id=user.id,
                email=user.email,
                plan=user.plan,
                email_verified=bool(user.email_verified),
            )

        if not user_snapshot.email_verified:
            return self._deny(request, CheckResult(
                allowed=False,
                reason=DenialReason.EMAIL_NOT_VERIFIED,
                user_id=user_snapshot.id,
                user=user_snapshot,
            ))

        effective = self.resolver.get_effective_plan(user_snapshot.id)
        subscription = None
        if effective.has_subscription:
            subscription = SubscriptionSnapshot(
                id=effective.subscription_id,
                plan=effective.subscription_plan,
                status=effective.subscription_status,
                end_date=effective.expires_at,
            )

        if effective.reason != ResolutionReason.ACTIVE:
            return self._deny(request, CheckResult(
                allowed=False,
                reason=_RESOLUTION_TO_DENIAL[effective.reason],
                user_id=user_snapshot.id,
                subscription=subscription,
                user=user_snapshot,
            ))

        return CheckResult(
            allowed=True,
            user_id=user_snapshot.id,
            subscription=subscription,
            user=user_snapshot,
        )

    def _deny(self, request: Request, result: CheckResult) -> CheckResult:
        logger.info(
            "Entitlement check denied",
            extra={
                "reason": result.reason.value,
                "user_id": result.user_id,
                "path": request.url.path,
            },
        )
        if self._audit is not None:
            self._audit.record_from_request(
                request,
                AuditAction.ENTITLEMENT_DENIED,
                user_id=result.user_id,
                metadata={"reason": result.reason.value, "path": request.url.path},
            )
        return result
