"""Detached work that must finish even after the HTTP response went out.

The webhook endpoint acknowledges the provider before the event is applied.
``BackgroundTaskRunner`` owns the threads that do the applying: each unit of
work runs inside its own error boundary (failures are logged, never raised
back into a request), and ``drain`` blocks until every submitted unit has
settled. The application calls ``drain`` while shutting down so a worker is
never torn down with events half processed.
"""

import contextvars
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from onboarding_billing.core.id_utils import generate_correlation_id
from onboarding_billing.core.observability import log_event

logger = logging.getLogger("onboarding_billing.background")


class RunnerClosedError(RuntimeError):
    pass


class BackgroundTaskRunner:
    def __init__(self, *, max_workers: int = 4, thread_name_prefix: str = "billing-bg"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        task_id = generate_correlation_id("task")

        def _guarded() -> Any:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "background_task_failed",
                    task=name,
                    task_id=task_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return None

        with self._lock:
            if self._closed:
                raise RunnerClosedError("Background runner is shutting down")
            # The copied context keeps the submitting request id on the task's log lines.
            future = self._executor.submit(contextvars.copy_context().run, _guarded)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for all submitted work. Returns False when the timeout expired first."""
        # Tasks may submit follow-up tasks (notifications), so loop until quiet.
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            _done, not_done = wait(pending, timeout=timeout)
            if not_done:
                log_event(
                    logger,
                    logging.WARNING,
                    "background_drain_timeout",
                    pending=len(not_done),
                )
                return False

    def shutdown(self, timeout: float | None = None) -> bool:
        drained = self.drain(timeout)
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=drained)
        return drained

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
