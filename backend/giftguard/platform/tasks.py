"""
Detached (fire-and-forget) task execution.

Used for side effects that must never block or fail the request that
triggered them: lazy subscription expiry and audit log writes.

Contract:
- spawn() returns immediately
- a failing task is logged with its name and error type, never re-raised
- drain() waits for in-flight tasks (shutdown hooks and tests)
"""

import logging
import threading
from concurrent import futures
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class DetachedTaskRunner:
    """Thread-pool backed runner for detached side effects."""

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "giftguard-detached"):
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._pending: set[futures.Future] = set()
        self._lock = threading.Lock()

    def spawn(self, fn: Callable[..., Any], *args: Any, name: Optional[str] = None, **kwargs: Any) -> futures.Future:
        """Submit fn(*args, **kwargs) without waiting for it."""
        task_name = name or getattr(fn, "__name__", "detached_task")
        future = self._executor.submit(fn, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(f, task_name))
        return future

    def _on_done(self, future: futures.Future, task_name: str) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            logger.warning("Detached task cancelled", extra={"task": task_name})
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Detached task failed",
                extra={"task": task_name, "error_type": type(exc).__name__, "error": str(exc)},
            )

    def drain(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for all in-flight tasks. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineTaskRunner:
    """
    Runs tasks synchronously in the caller's thread.

    Same failure contract as DetachedTaskRunner: errors are logged and
    swallowed. Used by the cron job (where blocking is fine) and tests.
    """

    def spawn(self, fn: Callable[..., Any], *args: Any, name: Optional[str] = None, **kwargs: Any) -> None:
        task_name = name or getattr(fn, "__name__", "inline_task")
        try:
            fn(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "Detached task failed",
                extra={"task": task_name, "error_type": type(exc).__name__, "error": str(exc)},
            )

    def drain(self, timeout: Optional[float] = None) -> bool:
        return True

    def shutdown(self, wait: bool = True) -> None:
        return None
