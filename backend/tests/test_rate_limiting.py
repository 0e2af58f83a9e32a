"""
Tests for Rate Limiting Middleware.

Fixed-window rate limiting over a pluggable store.

Verifies:
- Rate limiter allows requests under limit
- Rate limiter blocks requests over limit without incrementing
- A new window opens once the old one has elapsed
- Increment-and-compare is atomic per key under concurrency
- Retry-After and X-RateLimit-* headers present in 429 response
- Kill switch disables rate limiting
- Redis failure degrades gracefully (allows request)
"""

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

import pytest
import redis as redis_lib
from fastapi import HTTPException
from starlette.requests import Request

from giftguard.middleware.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitRecord,
    RateLimitResult,
    RedisRateLimitStore,
    derive_key,
    rate_limit_dependency,
    rate_limit_headers,
)

T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond clock the test advances by hand."""

    def __init__(self, now_ms=T0):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms

    def advance(self, ms):
        self.now_ms += ms


def _request(headers=None):
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/login", "query_string": b"", "headers": raw})


class TestRateLimiter:
    """Test the RateLimiter class directly."""

    def _create_limiter(self, clock=None, store=None):
        store = store if store is not None else InMemoryRateLimitStore()
        return RateLimiter(store=store, clock=clock or FakeClock())

    def test_injected_empty_store_is_used(self):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store=store, clock=FakeClock())

        limiter.check_and_consume("k", 5, 60_000)

        assert limiter.store is store
        assert len(store) == 1
        assert store.get("k").count == 1

    def test_sixth_request_in_window_denied(self):
        limiter = self._create_limiter()

        allowed = [limiter.check_and_consume("login:ip:ua", 5, 60_000).allowed for _ in range(6)]

        assert allowed == [True, True, True, True, True, False]

    def test_new_window_after_elapsed(self):
        clock = FakeClock()
        limiter = self._create_limiter(clock)
        for _ in range(6):
            limiter.check_and_consume("login:ip:ua", 5, 60_000)

        clock.advance(60_001)
        result = limiter.check_and_consume("login:ip:ua", 5, 60_000)

        assert result.allowed is True
        assert result.remaining == 4
        assert result.reset_time == T0 + 60_001 + 60_000

    def test_window_boundary_is_inclusive(self):
        clock = FakeClock()
        limiter = self._create_limiter(clock)
        for _ in range(5):
            limiter.check_and_consume("k", 5, 60_000)

        clock.advance(60_000)
        assert limiter.check_and_consume("k", 5, 60_000).allowed is False

    def test_remaining_counts_down(self):
        limiter = self._create_limiter()

        remaining = [limiter.check_and_consume("k", 3, 1000).remaining for _ in range(4)]

        assert remaining == [2, 1, 0, 0]

    def test_denial_does_not_increment(self):
        store = InMemoryRateLimitStore()
        limiter = self._create_limiter(store=store)
        for _ in range(10):
            limiter.check_and_consume("k", 5, 60_000)

        assert store.get("k").count == 5

    def test_keys_are_independent(self):
        limiter = self._create_limiter()
        for _ in range(5):
            limiter.check_and_consume("a", 5, 60_000)

        assert limiter.check_and_consume("a", 5, 60_000).allowed is False
        assert limiter.check_and_consume("b", 5, 60_000).allowed is True

    def test_reset_clears_key(self):
        limiter = self._create_limiter()
        for _ in range(5):
            limiter.check_and_consume("k", 5, 60_000)

        limiter.reset("k")

        assert limiter.check_and_consume("k", 5, 60_000).allowed is True

    def test_expired_windows_swept(self):
        clock = FakeClock()
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store=store, clock=clock, sweep_interval_ms=1000)
        for key in ("a", "b", "c"):
            limiter.check_and_consume(key, 5, 500)
        assert len(store) == 3

        clock.advance(2000)
        limiter.check_and_consume("d", 5, 500)

        assert len(store) == 1

    def test_concurrent_requests_admit_exactly_max(self):
        limiter = RateLimiter(store=InMemoryRateLimitStore())
        barrier = threading.Barrier(20)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            result = limiter.check_and_consume("hot-key", 5, 60_000)
            with results_lock:
                results.append(result.allowed)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5
        assert results.count(False) == 15


class TestRedisStore:
    """RedisRateLimitStore against a mock Redis client."""

    def _store(self, mock_redis):
        return RedisRateLimitStore(client=mock_redis)

    def test_get_missing_key(self):
        mock_redis = Mock()
        mock_redis.hgetall.return_value = {}

        assert self._store(mock_redis).get("login:ip:ua") is None
        mock_redis.hgetall.assert_called_once_with("ratelimit:login:ip:ua")

    def test_get_existing_key(self):
        mock_redis = Mock()
        mock_redis.hgetall.return_value = {"count": "3", "reset_time": str(T0)}

        assert self._store(mock_redis).get("k") == RateLimitRecord(count=3, reset_time=T0)

    def test_set_expires_at_window_end(self):
        mock_redis = Mock()
        pipe = Mock()
        mock_redis.pipeline.return_value = pipe

        self._store(mock_redis).set("k", RateLimitRecord(count=1, reset_time=T0))

        pipe.hset.assert_called_once_with("ratelimit:k", mapping={"count": 1, "reset_time": T0})
        pipe.pexpireat.assert_called_once_with("ratelimit:k", T0 + 1000)
        pipe.execute.assert_called_once()

    def test_limiter_over_redis(self):
        mock_redis = Mock()
        mock_redis.hgetall.return_value = {"count": "5", "reset_time": str(T0 + 30_000)}
        mock_redis.lock.return_value.acquire.return_value = True
        limiter = RateLimiter(store=self._store(mock_redis), clock=FakeClock())

        result = limiter.check_and_consume("k", 5, 60_000)

        assert result.allowed is False
        assert result.reset_time == T0 + 30_000
        mock_redis.lock.return_value.release.assert_called_once()

    def test_redis_failure_allows_request(self):
        """Redis failure results in graceful degradation (allow request)."""
        mock_redis = Mock()
        mock_redis.lock.return_value.acquire.return_value = True
        mock_redis.hgetall.side_effect = redis_lib.ConnectionError("Redis down")
        limiter = RateLimiter(store=self._store(mock_redis), clock=FakeClock())

        result = limiter.check_and_consume("k", 5, 60_000)

        assert result.allowed is True
        assert result.remaining == 5

    def test_lock_timeout_allows_request(self):
        mock_redis = Mock()
        mock_redis.lock.return_value.acquire.return_value = False
        limiter = RateLimiter(store=self._store(mock_redis), clock=FakeClock())

        assert limiter.check_and_consume("k", 5, 60_000).allowed is True
        mock_redis.hgetall.assert_not_called()


class TestKeyAndHeaders:

    def test_key_format(self):
        request = _request({"X-Forwarded-For": "198.51.100.7, 10.0.0.1", "User-Agent": "Mozilla/5.0"})

        endpoint, ip, ua_hash = derive_key(request, "login").split(":")

        assert endpoint == "login"
        assert ip == "198.51.100.7"
        assert len(ua_hash) == 16

    def test_key_fallbacks(self):
        assert derive_key(_request({"X-Real-IP": "10.0.0.2"}), "login").split(":")[1] == "10.0.0.2"
        assert derive_key(_request(), "login").split(":")[1] == "unknown"

    def test_user_agent_changes_key(self):
        first = derive_key(_request({"User-Agent": "Mozilla/5.0"}), "login")
        second = derive_key(_request({"User-Agent": "curl/8.0"}), "login")
        assert first != second

    def test_headers(self):
        result = RateLimitResult(allowed=False, remaining=0, reset_time=T0 + 44_500, limit=5)

        headers = rate_limit_headers(result, now_ms=T0)

        assert headers["Retry-After"] == "45"
        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["X-RateLimit-Reset"] == "2023-11-14T22:14:04.500Z"

    def test_retry_after_never_negative(self):
        result = RateLimitResult(allowed=False, remaining=0, reset_time=T0, limit=5)
        assert result.retry_after_seconds(T0 + 5000) == 0


class TestRateLimitDependency:
    """Test the FastAPI dependency function."""

    @patch.dict("os.environ", {"RATE_LIMIT_ENABLED": "false"})
    @pytest.mark.asyncio
    async def test_kill_switch_disables_rate_limiting(self):
        """When RATE_LIMIT_ENABLED=false, rate limiting is skipped."""
        dep_fn = rate_limit_dependency("login")
        mock_request = Mock()

        result = await dep_fn(mock_request)
        assert result.allowed is True

    @patch.dict("os.environ", {"RATE_LIMIT_ENABLED": "true"})
    @pytest.mark.asyncio
    async def test_429_on_exceeded(self):
        """429 raised when rate limit exceeded."""
        limiter = Mock()
        limiter.check_and_consume.return_value = RateLimitResult(
            allowed=False, remaining=0, limit=5, reset_time=T0 + 45_000,
        )
        audit_sink = MagicMock()
        mock_request = MagicMock()
        mock_request.headers = {"User-Agent": "Mozilla/5.0"}
        mock_request.app.state = SimpleNamespace(rate_limiter=limiter, audit_sink=audit_sink)

        dep_fn = rate_limit_dependency("login", max_requests=5, window_ms=15 * 60 * 1000)

        with patch("giftguard.middleware.rate_limit._now_ms", return_value=T0):
            with pytest.raises(HTTPException) as exc_info:
                await dep_fn(mock_request)

        assert exc_info.value.status_code == 429
        assert exc_info.value.headers["Retry-After"] == "45"
        assert exc_info.value.headers["X-RateLimit-Remaining"] == "0"
        assert exc_info.value.detail["error_code"] == "RATE_LIMIT_EXCEEDED"
        limiter.check_and_consume.assert_called_once()
        key, max_requests, window_ms = limiter.check_and_consume.call_args[0]
        assert key.startswith("login:unknown:")
        assert (max_requests, window_ms) == (5, 15 * 60 * 1000)
        audit_sink.record_from_request.assert_called_once()

    @patch.dict("os.environ", {"RATE_LIMIT_ENABLED": "true"})
    @pytest.mark.asyncio
    async def test_allowed_returns_result(self):
        limiter = RateLimiter(store=InMemoryRateLimitStore())
        mock_request = MagicMock()
        mock_request.headers = {}
        mock_request.app.state = SimpleNamespace(rate_limiter=limiter, audit_sink=None)

        result = await rate_limit_dependency("login", max_requests=2)(mock_request)

        assert result.allowed is True
        assert result.remaining == 1
