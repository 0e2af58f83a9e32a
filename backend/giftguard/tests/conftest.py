"""
Shared pytest fixtures for giftguard tests.

Every test gets a fresh in-memory SQLite database. Detached work runs on
InlineTaskRunner unless a test opts into the threaded runner explicitly.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from giftguard.config.settings import SecuritySettings
from giftguard.credentials.sessions import SessionRepository
from giftguard.credentials.vault import CredentialVault
from giftguard.database import create_session_factory
from giftguard.main import create_app
from giftguard.middleware.rate_limit import InMemoryRateLimitStore, RateLimiter
from giftguard.models import Gift, Subscription, SubscriptionStatus, User
from giftguard.platform.audit import AuditSink
from giftguard.platform.tasks import InlineTaskRunner

TEST_JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"
TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef0123"
TEST_CRON_SECRET = "test-cron-secret"
TEST_ORIGIN = "https://app.example.com"


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def session_factory():
    factory = create_session_factory("sqlite://", create_tables=True)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user_factory(db):
    """Create and commit a User."""
    counter = {"n": 0}

    def _create(email=None, email_verified=True, plan=None):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash="$2b$04$notarealhashnotarealhashnotarealhashnotarealha",
            email_verified=email_verified,
            plan=plan,
        )
        db.add(user)
        db.commit()
        return user

    return _create


@pytest.fixture
def subscription_factory(db):
    """Create and commit a Subscription for a user."""

    def _create(
        user,
        plan="PREMIUM",
        status=SubscriptionStatus.ACTIVE.value,
        end_date=None,
        auto_renew=True,
        cancelled_at=None,
    ):
        subscription = Subscription(
            user_id=user.id,
            plan=plan,
            status=status,
            start_date=datetime.now(timezone.utc) - timedelta(days=30),
            end_date=end_date,
            auto_renew=auto_renew,
            cancelled_at=cancelled_at,
        )
        db.add(subscription)
        db.commit()
        return subscription

    return _create


@pytest.fixture
def gift_factory(db):
    def _create(user, count=1):
        for i in range(count):
            db.add(Gift(user_id=user.id, title=f"Gift {i}"))
        db.commit()

    return _create


# ============================================================================
# CREDENTIALS
# ============================================================================

@pytest.fixture
def vault():
    # Minimum bcrypt cost keeps the suite fast.
    return CredentialVault.from_secret(TEST_JWT_SECRET, bcrypt_rounds=4)


@pytest.fixture
def issue_token(session_factory, vault):
    """Persist a session row for the user and return a signed token for it."""

    def _issue(user, ttl=None):
        with session_factory() as session:
            row, _ = SessionRepository(session).create_session(user.id)
            session_id = row.id
        return vault.issue_session_token(
            {"user_id": user.id, "email": user.email, "session_id": session_id},
            ttl=ttl,
        )

    return _issue


# ============================================================================
# RUNTIME COLLABORATORS
# ============================================================================

@pytest.fixture
def task_runner():
    return InlineTaskRunner()


@pytest.fixture
def audit_sink(session_factory, task_runner):
    return AuditSink(session_factory, task_runner)


@pytest.fixture
def make_request():
    """Build a real Starlette Request from headers and cookies."""

    def _make(headers=None, cookies=None, path="/api/limits/photos", method="GET", app=None):
        raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
        if cookies:
            cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
            raw_headers.append((b"cookie", cookie_header.encode("latin-1")))
        scope = {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": b"",
            "headers": raw_headers,
        }
        if app is not None:
            scope["app"] = app
        return Request(scope)

    return _make


# ============================================================================
# HTTP
# ============================================================================

@pytest.fixture
def settings():
    return SecuritySettings(
        app_env="test",
        jwt_secret=TEST_JWT_SECRET,
        encryption_key=TEST_ENCRYPTION_KEY,
        database_url="sqlite://",
        cron_secret=TEST_CRON_SECRET,
        allowed_origins=[TEST_ORIGIN],
        bcrypt_rounds=4,
    )


@pytest.fixture
def app(settings, session_factory, vault, task_runner, monkeypatch):
    monkeypatch.delenv("RATE_LIMIT_ENABLED", raising=False)
    return create_app(
        settings=settings,
        session_factory=session_factory,
        task_runner=task_runner,
        rate_limiter=RateLimiter(store=InMemoryRateLimitStore()),
        vault=vault,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(issue_token):
    def _headers(user):
        return {"Authorization": f"Bearer {issue_token(user)}"}

    return _headers
