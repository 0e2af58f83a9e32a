"""
Request-shape guards applied before any business logic.

- Origin check: a request carrying an Origin header outside ALLOWED_ORIGINS
  is rejected with 403. Requests without an Origin header pass.
- Content type: POST/PUT/PATCH must declare application/json (400).
"""

import logging
import os
from typing import Iterable, Optional

from fastapi import Request

from giftguard.platform.errors import PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000",)
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def get_allowed_origins() -> list[str]:
    raw = os.getenv("ALLOWED_ORIGINS")
    if not raw:
        return list(DEFAULT_ALLOWED_ORIGINS)
    return [o.strip() for o in raw.split(",") if o.strip()]


def is_origin_allowed(origin: Optional[str], allowed_origins: Iterable[str]) -> bool:
    if not origin:
        return True
    return origin in set(allowed_origins)


def requires_json_body(method: str, content_type: Optional[str]) -> bool:
    """True when the request must be rejected for a missing JSON content type."""
    if method.upper() not in BODY_METHODS:
        return False
    return not content_type or "application/json" not in content_type.lower()


async def require_allowed_origin(request: Request) -> None:
    """FastAPI dependency: reject requests from origins not in the allow list."""
    allowed = getattr(request.app.state, "allowed_origins", None) or get_allowed_origins()
    origin = request.headers.get("Origin")
    if not is_origin_allowed(origin, allowed):
        logger.warning(
            "Origin rejected",
            extra={"origin": origin, "path": request.url.path, "method": request.method},
        )
        raise PermissionDeniedError("Origin not allowed")


async def require_json_content_type(request: Request) -> None:
    """FastAPI dependency: POST/PUT/PATCH must send application/json."""
    if requires_json_body(request.method, request.headers.get("Content-Type")):
        raise ValidationError("Content-Type must be application/json")
