"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- SubscriptionNotFoundError: lifecycle operation on a user without a subscription
- SubscriptionStateError: lifecycle operation not valid in the current status
- EntitlementDeniedError: request denied by the guard, carries the HTTP response

Denials produced by the guard itself are typed CheckResults; only the HTTP
dependency turns them into EntitlementDeniedError.
"""

from typing import Any


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SubscriptionNotFoundError(EntitlementError):
    """Raised when a lifecycle operation targets a user with no subscription."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        super().__init__("No subscription found")

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.error_code}


class SubscriptionStateError(EntitlementError):
    """Raised when the subscription's status does not allow the operation."""

    def __init__(self, subscription_id: str, status: str, message: str):
        self.subscription_id = subscription_id
        self.status = status
        self.error_code = "INVALID_SUBSCRIPTION_STATE"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.error_code, "status": self.status}


class EntitlementDeniedError(EntitlementError):
    """Raised by the HTTP dependency when a guard check denies the request."""

    def __init__(self, status_code: int, body: dict[str, Any]):
        self.status_code = status_code
        self.body = body
        super().__init__(str(body.get("error", "Access denied")))
