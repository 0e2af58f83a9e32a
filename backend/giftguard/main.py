"""
Application factory.

Wires configuration, the data layer and the guard components into a
FastAPI app. Every collaborator can be injected, which is how tests run the
full HTTP stack against an in-memory database.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from giftguard.api.routes import cron, health, limits, subscription
from giftguard.config.settings import SecuritySettings, assert_valid_environment
from giftguard.credentials.lockout import LoginAttemptTracker
from giftguard.credentials.vault import CredentialVault
from giftguard.database import create_session_factory
from giftguard.entitlements.errors import EntitlementDeniedError
from giftguard.entitlements.guard import EntitlementGuard, SessionGuard
from giftguard.entitlements.resolver import EntitlementResolver
from giftguard.middleware.rate_limit import InMemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from giftguard.middleware.request_guards import get_allowed_origins
from giftguard.platform.audit import AuditSink
from giftguard.platform.errors import ErrorHandlerMiddleware
from giftguard.platform.tasks import DetachedTaskRunner
from giftguard.utils.encryption import SymmetricCipher

logger = logging.getLogger(__name__)


def _build_rate_limiter(settings: SecuritySettings) -> RateLimiter:
    if settings.redis_url:
        return RateLimiter(store=RedisRateLimitStore(redis_url=settings.redis_url))
    return RateLimiter(store=InMemoryRateLimitStore())


def _build_cipher(settings: SecuritySettings) -> Optional[SymmetricCipher]:
    if not settings.encryption_key:
        # Production startup already failed in assert_valid_environment().
        logger.warning("ENCRYPTION_KEY not configured; field encryption unavailable")
        return None
    return SymmetricCipher(settings.encryption_key)


def create_app(
    settings: Optional[SecuritySettings] = None,
    session_factory: Optional[sessionmaker] = None,
    task_runner=None,
    rate_limiter: Optional[RateLimiter] = None,
    vault: Optional[CredentialVault] = None,
    cipher: Optional[SymmetricCipher] = None,
) -> FastAPI:
    settings = settings or SecuritySettings.from_env()
    if settings.is_production:
        assert_valid_environment()

    session_factory = session_factory or create_session_factory(settings.database_url)
    task_runner = task_runner or DetachedTaskRunner()
    vault = vault or CredentialVault.from_secret(
        settings.jwt_secret,
        session_ttl_seconds=settings.session_ttl_days * 24 * 60 * 60,
        bcrypt_rounds=settings.bcrypt_rounds,
    )

    audit_sink = AuditSink(session_factory, task_runner)
    resolver = EntitlementResolver(session_factory, task_runner)
    session_guard = SessionGuard(vault, session_factory)
    entitlement_guard = EntitlementGuard(session_guard, resolver, session_factory, audit_sink)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if not task_runner.drain(timeout=5.0):
            logger.warning("Detached tasks still running at shutdown")
        task_runner.shutdown(wait=False)

    app = FastAPI(title="giftguard", lifespan=lifespan)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.task_runner = task_runner
    app.state.vault = vault
    app.state.cipher = cipher or _build_cipher(settings)
    app.state.login_tracker = LoginAttemptTracker.from_settings(settings)
    app.state.audit_sink = audit_sink
    app.state.resolver = resolver
    app.state.session_guard = session_guard
    app.state.entitlement_guard = entitlement_guard
    app.state.rate_limiter = rate_limiter or _build_rate_limiter(settings)
    app.state.allowed_origins = settings.allowed_origins or get_allowed_origins()

    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app.state.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
    )

    @app.exception_handler(EntitlementDeniedError)
    async def entitlement_denied_handler(request: Request, exc: EntitlementDeniedError):
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    app.include_router(health.router)
    app.include_router(subscription.router)
    app.include_router(limits.router)
    app.include_router(cron.router)

    logger.info(
        "Application created",
        extra={"app_env": settings.app_env, "rate_limit_store": type(app.state.rate_limiter.store).__name__},
    )
    return app
