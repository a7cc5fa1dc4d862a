# shieldcsp/notifications/dispatcher.py
"""
Fire-and-forget dispatcher for scan side effects (notifications, audit).

Scans must never wait on, or fail because of, a side effect. Tasks run on a
small thread pool inside a fresh Flask app context, every exception is
logged and swallowed, and the number of in-flight tasks is bounded: when
the bound is reached new tasks are dropped with a warning instead of
blocking the caller.

max_workers=0 runs tasks inline on the calling thread (same error
swallowing). Used by tests and one-shot CLI runs.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)


class SideEffectDispatcher:

    def __init__(self, app=None, max_workers: int = 4, max_pending: int = 100):
        self.app = app
        self.max_workers = max_workers
        self._slots = threading.BoundedSemaphore(max(1, max_pending))
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._executor: Optional[ThreadPoolExecutor] = None
        if max_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix="side-effects",
            )

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> bool:
        """Queue a task. Returns False if it was dropped. Never raises."""
        name = getattr(fn, "__qualname__", repr(fn))

        if self._executor is None:
            self._run(fn, args, kwargs)
            return True

        if not self._slots.acquire(blocking=False):
            logger.warning("Side-effect queue full, dropping task %s", name)
            return False

        try:
            future = self._executor.submit(self._run, fn, args, kwargs)
        except RuntimeError as e:
            # Executor already shut down
            self._slots.release()
            logger.warning("Side-effect dispatcher closed, dropping task %s: %s", name, e)
            return False

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return True

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every task submitted so far has finished."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_pending)

    # ------------------------------------------------------------------

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        self._slots.release()

    def _run(self, fn, args, kwargs) -> None:
        try:
            if self.app is not None:
                with self.app.app_context():
                    fn(*args, **kwargs)
            else:
                fn(*args, **kwargs)
        except Exception:
            logger.exception("Side-effect task %s failed", getattr(fn, "__qualname__", repr(fn)))
