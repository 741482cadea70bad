from __future__ import annotations
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..core.models import Outcome

log = structlog.get_logger(__name__)

Listener = Callable[[Outcome], None]


class ResultReporter:
    """
    Delivers each job's terminal outcome exactly once per job id.

    Synchronous callers block in `wait(job_id)`; decoupled consumers register
    a listener with `subscribe()`. Outcomes stay readable through `peek()` for
    `ttl_s` seconds after publication.
    """

    def __init__(self, ttl_s: float = 300):
        self.ttl_s = ttl_s
        self._cond = threading.Condition()
        # job_id -> (outcome or None when abandoned, published_at)
        self._results: Dict[str, Tuple[Optional[Outcome], float]] = {}
        self._listeners: List[Listener] = []

    def publish(self, outcome: Outcome) -> bool:
        with self._cond:
            self._prune()
            if outcome.job_id in self._results:
                log.warning("duplicate_publish_ignored", job_id=outcome.job_id)
                return False
            self._results[outcome.job_id] = (outcome, time.monotonic())
            listeners = list(self._listeners)
            self._cond.notify_all()

        log.info("job_result_published", job_id=outcome.job_id,
                 status=outcome.status.value, reason=outcome.reason)
        for fn in listeners:
            try:
                fn(outcome)
            except Exception:
                log.exception("result_listener_failed", job_id=outcome.job_id)
        self._forward(outcome)
        return True

    def abandon(self, job_id: str) -> None:
        """Release waiters of a job that will never produce an outcome."""
        with self._cond:
            self._results.setdefault(job_id, (None, time.monotonic()))
            self._cond.notify_all()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Outcome]:
        with self._cond:
            self._cond.wait_for(lambda: job_id in self._results, timeout=timeout)
            hit = self._results.get(job_id)
        return hit[0] if hit else None

    def peek(self, job_id: str) -> Optional[Outcome]:
        with self._cond:
            hit = self._results.get(job_id)
        return hit[0] if hit else None

    def subscribe(self, fn: Listener) -> Callable[[], None]:
        with self._cond:
            self._listeners.append(fn)

        def unsubscribe():
            with self._cond:
                if fn in self._listeners:
                    self._listeners.remove(fn)
        return unsubscribe

    def _forward(self, outcome: Outcome) -> None:
        """Hook for out-of-process delivery."""

    def _prune(self):
        cutoff = time.monotonic() - self.ttl_s
        for job_id in [k for k, (_, ts) in self._results.items() if ts < cutoff]:
            del self._results[job_id]
