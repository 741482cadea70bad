from __future__ import annotations
import threading
from collections import deque
from typing import Deque, List, Optional

import structlog

from ..core.models import Job

log = structlog.get_logger(__name__)


class JobQueue:
    """
    FIFO by admission order; each job is handed to exactly one consumer.
    Completion order is not tied to dequeue order.
    """

    def enqueue(self, job: Job) -> str:
        raise NotImplementedError

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Block until a job is available or timeout elapses (None on timeout/close)."""
        raise NotImplementedError

    def ack(self, job_id: str) -> None:
        """The consumer is done with job_id (durable queues drop their in-flight copy)."""

    def heartbeat(self) -> None:
        """Renew this consumer's claim on its in-flight jobs (durable queues only)."""

    def cancel(self, job_id: str) -> bool:
        """Remove a not-yet-started job. False if it is running, finished or unknown."""
        raise NotImplementedError

    def close(self) -> List[str]:
        """Stop handing out jobs; discard and return the ids still queued."""
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class MemoryJobQueue(JobQueue):
    def __init__(self):
        self._items: Deque[Job] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def enqueue(self, job: Job) -> str:
        with self._cond:
            if self._closed:
                raise RuntimeError("queue is closed")
            self._items.append(job)
            self._cond.notify()
        return job.id

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout)
            if self._closed or not self._items:
                return None
            return self._items.popleft()

    def cancel(self, job_id: str) -> bool:
        with self._cond:
            for job in self._items:
                if job.id == job_id:
                    self._items.remove(job)
                    return True
        return False

    def close(self) -> List[str]:
        with self._cond:
            self._closed = True
            dropped = [j.id for j in self._items]
            self._items.clear()
            self._cond.notify_all()
        if dropped:
            log.info("queue_discarded_on_close", count=len(dropped))
        return dropped

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
