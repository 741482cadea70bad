from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

import structlog

from .artifact_store import ArtifactStore
from .job_queue import JobQueue, MemoryJobQueue
from .job_store import JobStore
from .reporter import ResultReporter
from .worker_pool import WorkerPool
from ..core.errors import BrokerUnavailable, JobNotFound, ResultUnavailable, UnsupportedLanguage
from ..core.models import Job, JobStatus, LanguageProfile, Outcome
from ..core.utils import new_job_id
from ..executor.base import SandboxRuntime
from ..executor.factory import build_runtime
from ..settings import Settings

log = structlog.get_logger(__name__)


class JobService:
    """
    Admission: validate the language, record the job, enqueue it.
    `run()` is the synchronous mode (block until the outcome); `submit()` is the
    decoupled mode (return the id, the caller picks the outcome up later).
    """

    def __init__(
        self,
        *,
        profiles: Mapping[str, LanguageProfile],
        queue: JobQueue,
        store: JobStore,
        reporter: ResultReporter,
        pool: Optional[WorkerPool] = None,
        announce_cancel: Optional[Callable[[str], None]] = None,
        sync_wait_s: float = 30.0,
    ):
        self.profiles = profiles
        self.queue = queue
        self.store = store
        self.reporter = reporter
        self.pool = pool
        self.announce_cancel = announce_cancel
        self.sync_wait_s = sync_wait_s

    def submit(self, code: str, language: str) -> str:
        if language not in self.profiles:
            log.info("job_rejected", language=language, reason="unsupported_language")
            raise UnsupportedLanguage(language)

        job = Job(id=new_job_id(), language=language, source_code=code)
        self.store.add(job)
        try:
            self.queue.enqueue(job)
        except BrokerUnavailable:
            self.store.delete(job.id)
            log.error("job_enqueue_failed", job_id=job.id)
            raise
        log.info("job_queued", job_id=job.id, language=language)
        return job.id

    def run(self, code: str, language: str, timeout: Optional[float] = None) -> Outcome:
        job_id = self.submit(code, language)
        outcome = self.reporter.wait(job_id, timeout or self.sync_wait_s)
        if outcome is None:
            raise ResultUnavailable(job_id)
        return outcome

    def result(self, job_id: str, wait: float = 0) -> Optional[Outcome]:
        """The outcome if terminal (waiting up to `wait` seconds), else None."""
        outcome = self.reporter.peek(job_id)
        if outcome is not None:
            return outcome
        if self.store.get(job_id) is None:
            # published and collected between the two reads
            outcome = self.reporter.peek(job_id)
            if outcome is not None:
                return outcome
            raise JobNotFound(job_id)
        if wait > 0:
            return self.reporter.wait(job_id, wait)
        return None

    def status(self, job_id: str) -> Dict:
        rec = self.store.get(job_id)
        if rec is not None:
            return rec.view()
        outcome = self.reporter.peek(job_id)
        if outcome is not None:
            return {**outcome.public(), "reason": outcome.reason}
        raise JobNotFound(job_id)

    def cancel(self, job_id: str) -> bool:
        """Best effort: drop a queued job, or kill a running one. No-op once finished."""
        if self.queue.cancel(job_id):
            self.store.delete(job_id)
            self.reporter.abandon(job_id)
            log.info("job_cancelled", job_id=job_id, phase="queued")
            return True
        if self.pool is not None and self.pool.cancel(job_id):
            return True
        if self.announce_cancel is not None:
            rec = self.store.get(job_id)
            if rec is not None and rec.status == JobStatus.RUNNING:
                self.announce_cancel(job_id)
                log.info("job_cancel_announced", job_id=job_id)
                return True
        return False


@dataclass
class Services:
    settings: Settings
    jobs: JobService
    reporter: ResultReporter
    queue: JobQueue
    pool: Optional[WorkerPool] = None

    def start(self):
        if self.pool is not None:
            self.queue.heartbeat()
            self.pool.start()
            threading.Thread(target=self._keepalive, name="queue-heartbeat", daemon=True).start()

    def _keepalive(self):
        # in-flight jobs stay leased to this process while the pool runs
        while not self.pool.stopping.wait(self.settings.queue_lease_s / 3):
            self.queue.heartbeat()

    def stop(self):
        if self.pool is not None:
            self.pool.stop(timeout=self.settings.kill_grace_s + 1)


def build_services(
    s: Settings,
    *,
    runtime: Optional[SandboxRuntime] = None,
    with_workers: Optional[bool] = None,
) -> Services:
    store = JobStore(s.database_url)
    announce = None
    if s.broker_url:
        from .broker import RedisJobQueue, RedisResultReporter, connect

        client = connect(s.broker_url)
        queue: JobQueue = RedisJobQueue(client, s.queue_name, lease_s=s.queue_lease_s)
        reporter: ResultReporter = RedisResultReporter(client, s.queue_name, ttl_s=s.result_ttl_s)
        announce = queue.announce_cancel
    else:
        queue = MemoryJobQueue()
        reporter = ResultReporter(ttl_s=s.result_ttl_s)

    if with_workers is None:
        with_workers = s.embedded_workers or not s.broker_url
    pool = None
    if with_workers:
        pool = WorkerPool(
            queue=queue,
            runtime=runtime or build_runtime(s),
            profiles=s.languages,
            artifacts=ArtifactStore(s.artifacts_dir),
            store=store,
            reporter=reporter,
            size=s.worker_pool_size,
            kill_grace_s=s.kill_grace_s,
            allow_network=s.allow_network,
            max_output_bytes=s.max_output_bytes,
            gc_delivered=s.gc_delivered_jobs,
        )

    jobs = JobService(
        profiles=s.languages, queue=queue, store=store, reporter=reporter,
        pool=pool, announce_cancel=announce, sync_wait_s=s.sync_wait_s,
    )
    return Services(settings=s, jobs=jobs, reporter=reporter, queue=queue, pool=pool)
