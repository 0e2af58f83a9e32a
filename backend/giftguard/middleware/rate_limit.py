"""
Fixed-window rate limiting with a pluggable counter store.

Protects endpoints from brute force and abuse by counting requests per
(endpoint, caller fingerprint) inside a fixed time window.

Features:
- Fixed window: the first request opens a window of window_ms; requests
  past max_requests inside it are denied without incrementing further
- Store interface (get/set/delete/purge_expired/lock) so the same
  algorithm runs on an in-process map or on Redis
- Increment-and-compare is atomic per key (store-provided lock)
- Lazy purge of expired windows, at most once per sweep interval
- Returns 429 with Retry-After / X-RateLimit-* headers when exceeded
- Graceful degradation if Redis is unavailable (allow request, log warning)

Configuration (environment variables):
- RATE_LIMIT_ENABLED: Kill switch (default: "true"); app.state.settings.rate_limit_enabled
                    can also turn limiting off per app
- REDIS_URL:          When set, counters live in Redis (multi-instance safe)

Usage (FastAPI dependency injection):
    from giftguard.middleware.rate_limit import rate_limit_dependency

    @router.post("/api/subscription/cancel")
    async def cancel(
        request: Request,
        _rate_limit=Depends(rate_limit_dependency("subscription-cancel", 5, 60_000)),
    ):
        ...
"""

import hashlib
import logging
import math
import os
import threading
import time
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

import redis
from fastapi import HTTPException, Request, status

from giftguard.platform.audit import AuditAction, get_client_ip

logger = logging.getLogger(__name__)


DEFAULT_MAX_REQUESTS = 5
DEFAULT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_MS = 60 * 1000
USER_AGENT_HASH_LENGTH = 16


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _is_rate_limit_enabled(request: Optional[Request] = None) -> bool:
    """
    Rate limiting runs unless the RATE_LIMIT_ENABLED kill switch is off, or
    the app's SecuritySettings disable it.
    """
    if os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("true", "1", "yes"):
        return False
    settings = getattr(request.app.state, "settings", None) if request is not None else None
    return settings is None or settings.rate_limit_enabled


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Records and results
# ---------------------------------------------------------------------------

@dataclass
class RateLimitRecord:
    """Counter for one window. reset_time is epoch milliseconds."""
    count: int
    reset_time: int


@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed:    Whether the request is allowed.
        remaining:  Requests left in the current window.
        reset_time: Epoch milliseconds when the current window ends.
        limit:      Maximum number of requests allowed per window.
    """

    allowed: bool
    remaining: int
    reset_time: int
    limit: int

    def retry_after_seconds(self, now_ms: Optional[int] = None) -> int:
        now_ms = _now_ms() if now_ms is None else now_ms
        return max(0, math.ceil((self.reset_time - now_ms) / 1000))

    def reset_iso(self) -> str:
        reset = datetime.fromtimestamp(self.reset_time / 1000, tz=timezone.utc)
        return reset.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RateLimitStoreUnavailable(Exception):
    """The backing store could not be reached."""


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class RateLimitStore(ABC):
    """Key/value store for window counters."""

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitRecord]:
        ...

    @abstractmethod
    def set(self, key: str, record: RateLimitRecord) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def purge_expired(self, now_ms: int) -> int:
        """Drop records whose window ended before now_ms. Returns count removed."""

    @abstractmethod
    def lock(self, key: str):
        """Context manager serializing read-modify-write on one key."""


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local store for single-instance deployments.

    Per-key atomicity comes from a fixed set of striped locks, so lock
    memory stays bounded no matter how many distinct keys are seen.
    """

    def __init__(self, lock_stripes: int = 64):
        self._records: dict[str, RateLimitRecord] = {}
        self._records_lock = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(lock_stripes)]

    def get(self, key: str) -> Optional[RateLimitRecord]:
        with self._records_lock:
            record = self._records.get(key)
            return RateLimitRecord(record.count, record.reset_time) if record else None

    def set(self, key: str, record: RateLimitRecord) -> None:
        with self._records_lock:
            self._records[key] = RateLimitRecord(record.count, record.reset_time)

    def delete(self, key: str) -> None:
        with self._records_lock:
            self._records.pop(key, None)

    def purge_expired(self, now_ms: int) -> int:
        with self._records_lock:
            expired = [k for k, r in self._records.items() if now_ms > r.reset_time]
            for key in expired:
                del self._records[key]
        return len(expired)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        stripe = self._stripes[zlib.crc32(key.encode("utf-8")) % len(self._stripes)]
        with stripe:
            yield

    def __len__(self) -> int:
        with self._records_lock:
            return len(self._records)


class RedisRateLimitStore(RateLimitStore):
    """
    Redis-backed store for multi-instance deployments.

    Each key is a hash {count, reset_time} expiring at reset_time
    (PEXPIREAT), so Redis purges stale windows itself. Cross-instance
    atomicity uses a short-lived Redis lock per key.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        key_prefix: str = "ratelimit:",
        lock_timeout: float = 2.0,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.lock_timeout = lock_timeout
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        """
        Get or create a Redis connection.

        The connection is created lazily on first use so that the module
        can be imported even when Redis is not yet available.
        """
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Optional[RateLimitRecord]:
        try:
            data = self._get_redis().hgetall(self._key(key))
        except redis.RedisError as exc:
            raise RateLimitStoreUnavailable(type(exc).__name__) from exc
        if not data:
            return None
        return RateLimitRecord(count=int(data["count"]), reset_time=int(data["reset_time"]))

    def set(self, key: str, record: RateLimitRecord) -> None:
        name = self._key(key)
        try:
            pipe = self._get_redis().pipeline(transaction=True)
            pipe.hset(name, mapping={"count": record.count, "reset_time": record.reset_time})
            # Keep the hash one extra second so a request landing exactly on
            # reset_time still reads the closing window.
            pipe.pexpireat(name, record.reset_time + 1000)
            pipe.execute()
        except redis.RedisError as exc:
            raise RateLimitStoreUnavailable(type(exc).__name__) from exc

    def delete(self, key: str) -> None:
        try:
            self._get_redis().delete(self._key(key))
        except redis.RedisError as exc:
            raise RateLimitStoreUnavailable(type(exc).__name__) from exc

    def purge_expired(self, now_ms: int) -> int:
        # Handled by key expiry.
        return 0

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        try:
            lock = self._get_redis().lock(
                f"{self._key(key)}:lock",
                timeout=self.lock_timeout,
                blocking_timeout=self.lock_timeout,
            )
            acquired = lock.acquire()
        except redis.RedisError as exc:
            raise RateLimitStoreUnavailable(type(exc).__name__) from exc
        if not acquired:
            raise RateLimitStoreUnavailable("LockTimeout")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.RedisError as exc:
                logger.warning(
                    "Failed to release rate limit lock",
                    extra={"error_type": type(exc).__name__},
                )


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Fixed-window counter over a RateLimitStore.

    The boundary burst of the fixed window (up to twice the nominal rate
    across a window edge) is accepted; this is not a sliding window.

    If the store is unavailable the limiter degrades gracefully: requests
    are allowed and a warning is logged.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], int] = _now_ms,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self.sweep_interval_ms = sweep_interval_ms
        self._last_sweep_ms = 0
        self._sweep_lock = threading.Lock()

    def _maybe_sweep(self, now_ms: int) -> None:
        if now_ms - self._last_sweep_ms < self.sweep_interval_ms:
            return
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep_ms = now_ms
            removed = self.store.purge_expired(now_ms)
            if removed:
                logger.debug("Purged expired rate limit windows", extra={"count": removed})
        finally:
            self._sweep_lock.release()

    def check_and_consume(
        self,
        key: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> RateLimitResult:
        """
        Count one request against key.

        Algorithm:
        1. No record, or now > reset_time -> open a new window, count = 1
        2. count >= max_requests          -> denied, counter untouched
        3. Otherwise                      -> count += 1, allowed
        """
        now = self._clock()
        try:
            self._maybe_sweep(now)
            with self.store.lock(key):
                record = self.store.get(key)

                if record is None or now > record.reset_time:
                    reset_time = now + window_ms
                    self.store.set(key, RateLimitRecord(count=1, reset_time=reset_time))
                    return RateLimitResult(
                        allowed=True,
                        remaining=max_requests - 1,
                        reset_time=reset_time,
                        limit=max_requests,
                    )

                if record.count >= max_requests:
                    return RateLimitResult(
                        allowed=False,
                        remaining=0,
                        reset_time=record.reset_time,
                        limit=max_requests,
                    )

                record.count += 1
                self.store.set(key, record)
                return RateLimitResult(
                    allowed=True,
                    remaining=max_requests - record.count,
                    reset_time=record.reset_time,
                    limit=max_requests,
                )

        except RateLimitStoreUnavailable as exc:
            logger.warning(
                "Rate limit store unavailable - allowing request (fail-open)",
                extra={"error_type": str(exc), "rate_limit_key_prefix": key.split(":", 1)[0]},
            )
            return RateLimitResult(
                allowed=True,
                remaining=max_requests,
                reset_time=now + window_ms,
                limit=max_requests,
            )

    def reset(self, key: str) -> None:
        self.store.delete(key)


def derive_key(request: Request, endpoint: str) -> str:
    """
    Caller fingerprint: ``endpoint:ip:sha256(user_agent)[:16]``.

    IP comes from the first X-Forwarded-For entry, then X-Real-IP,
    else "unknown".
    """
    ip = get_client_ip(request)
    user_agent = request.headers.get("User-Agent") or "unknown"
    ua_hash = hashlib.sha256(user_agent.encode("utf-8")).hexdigest()[:USER_AGENT_HASH_LENGTH]
    return f"{endpoint}:{ip}:{ua_hash}"


def rate_limit_headers(result: RateLimitResult, now_ms: Optional[int] = None) -> dict[str, str]:
    return {
        "Retry-After": str(result.retry_after_seconds(now_ms)),
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": result.reset_iso(),
    }


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_rate_limiter_instance: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """
    Return the module-level RateLimiter singleton.

    Uses Redis when REDIS_URL is set, otherwise an in-process store.
    """
    global _rate_limiter_instance
    if _rate_limiter_instance is None:
        redis_url = os.getenv("REDIS_URL")
        store = RedisRateLimitStore(redis_url=redis_url) if redis_url else InMemoryRateLimitStore()
        _rate_limiter_instance = RateLimiter(store=store)
    return _rate_limiter_instance


def _limiter_for(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    return limiter if limiter is not None else get_rate_limiter()


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def rate_limit_dependency(
    endpoint_name: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> Callable:
    """
    Create a FastAPI dependency that enforces rate limiting.

    Args:
        endpoint_name: Logical endpoint name, first segment of the key.
        max_requests:  Requests allowed per window.
        window_ms:     Window length in milliseconds.

    Returns:
        An async dependency function.
    """

    async def _dependency(request: Request) -> RateLimitResult:
        if not _is_rate_limit_enabled(request):
            return RateLimitResult(
                allowed=True,
                remaining=max_requests,
                reset_time=_now_ms() + window_ms,
                limit=max_requests,
            )

        limiter = _limiter_for(request)
        key = derive_key(request, endpoint_name)
        result = limiter.check_and_consume(key, max_requests, window_ms)

        if not result.allowed:
            headers = rate_limit_headers(result)
            logger.warning(
                "Rate limit triggered",
                extra={
                    "action": "rate_limit_triggered",
                    "endpoint": endpoint_name,
                    "limit": result.limit,
                    "window_ms": window_ms,
                    "retry_after": headers["Retry-After"],
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            audit_sink = getattr(request.app.state, "audit_sink", None)
            if audit_sink is not None:
                audit_sink.record_from_request(
                    request,
                    AuditAction.RATE_LIMIT_TRIGGERED,
                    metadata={"endpoint": endpoint_name, "limit": result.limit, "window_ms": window_ms},
                )

            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "Too many requests. Please try again later.",
                    "error_code": "RATE_LIMIT_EXCEEDED",
                    "retry_after": int(headers["Retry-After"]),
                },
                headers=headers,
            )

        return result

    return _dependency
