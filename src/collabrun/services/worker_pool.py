from __future__ import annotations
import subprocess
import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import structlog

from .artifact_store import ArtifactStore
from .job_queue import JobQueue
from .job_store import JobStore
from .reporter import ResultReporter
from ..core.errors import SpawnFailure, UnsupportedLanguage
from ..core.models import Job, JobStatus, LanguageProfile, Outcome
from ..core.utils import Deadline, new_execution_id, utcnow
from ..executor.base import ExecSpec, ExecutionHandle, SandboxRuntime

log = structlog.get_logger(__name__)


def clip(text: str, limit: int) -> str:
    data = text.encode("utf-8", "replace")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", "ignore") + f"\n[output truncated at {limit} bytes]"


@dataclass
class Execution:
    """The one in-flight execution a worker owns."""
    job_id: str
    execution_id: str
    handle: Optional[ExecutionHandle] = None
    cancelled: bool = False


class Worker(threading.Thread):
    def __init__(self, pool: "WorkerPool", index: int):
        super().__init__(name=f"collabrun-worker-{index}", daemon=True)
        self.pool = pool
        self.current: Optional[str] = None

    def run(self):
        pool = self.pool
        while not pool.stopping.is_set():
            job = pool.queue.dequeue(timeout=pool.poll_s)
            if job is None:
                continue
            self.current = job.id
            try:
                pool.process(job)
            except Exception:
                log.exception("worker_job_crashed", job_id=job.id, worker=self.name)
            finally:
                self.current = None
                pool.queue.ack(job.id)


class WorkerPool:
    """
    N workers, each running one job at a time through the sandbox runtime.
    Size bounds how many untrusted processes run concurrently.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        runtime: SandboxRuntime,
        profiles: Mapping[str, LanguageProfile],
        artifacts: ArtifactStore,
        store: JobStore,
        reporter: ResultReporter,
        size: int = 2,
        kill_grace_s: float = 2.0,
        allow_network: bool = False,
        max_output_bytes: int = 64 * 1024,
        gc_delivered: bool = True,
        poll_s: float = 0.5,
    ):
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self.queue = queue
        self.runtime = runtime
        self.profiles = profiles
        self.artifacts = artifacts
        self.store = store
        self.reporter = reporter
        self.size = size
        self.kill_grace_s = kill_grace_s
        self.allow_network = allow_network
        self.max_output_bytes = max_output_bytes
        self.gc_delivered = gc_delivered
        self.poll_s = poll_s

        self.stopping = threading.Event()
        self._workers: List[Worker] = []
        self._lock = threading.Lock()
        self._running: Dict[str, Execution] = {}

    # ------------ lifecycle ------------

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [Worker(self, i) for i in range(self.size)]
        for w in self._workers:
            w.start()
        log.info("worker_pool_started", size=self.size, runtime=self.runtime.name)

    def stop(self, timeout: Optional[float] = None) -> List[str]:
        """Discard queued jobs; running jobs finish on their own deadline."""
        self.stopping.set()
        dropped = self.queue.close()
        for job_id in dropped:
            self.store.delete(job_id)
            self.reporter.abandon(job_id)
        for w in self._workers:
            w.join(timeout)
        self._workers = []
        log.info("worker_pool_stopped", discarded=len(dropped))
        return dropped

    def running(self) -> List[str]:
        with self._lock:
            return list(self._running)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            ex = self._running.get(job_id)
            if ex is None:
                return False
            ex.cancelled = True
        log.info("job_cancel_requested", job_id=job_id, execution_id=ex.execution_id)
        self._force_kill(ex)
        return True

    # ------------ one job ------------

    def process(self, job: Job) -> Optional[Outcome]:
        profile = self.profiles.get(job.language)
        if profile is None:
            # admission already rejects these; a stale payload can still carry one
            return self._report(Outcome(
                job.id, JobStatus.FAILED, str(UnsupportedLanguage(job.language)),
                reason="unsupported_language", finished_at=utcnow(),
            ))

        ex = Execution(job.id, new_execution_id(job.id))
        if not self.store.claim(job.id, ex.execution_id, job.attempt):
            log.warning("job_claim_rejected", job_id=job.id, attempt=job.attempt)
            return None
        with self._lock:
            self._running[job.id] = ex

        started = utcnow()
        log.info("job_started", job_id=job.id, language=job.language,
                 execution_id=ex.execution_id, attempt=job.attempt)
        try:
            outcome = self._execute(job, profile, ex)
        except Exception as e:
            # a claimed job must still reach a terminal status
            log.exception("job_internal_error", job_id=job.id, execution_id=ex.execution_id)
            outcome = Outcome(job.id, JobStatus.FAILED, f"Internal error: {type(e).__name__}: {e}",
                              reason="internal_error")
        finally:
            self._cleanup(ex)
        outcome.started_at = started
        outcome.finished_at = utcnow()
        return self._report(outcome)

    def _execute(self, job: Job, profile: LanguageProfile, ex: Execution) -> Outcome:
        try:
            artifact = self.artifacts.write_source(job.id, profile.file_extension, job.source_code)
            spec = ExecSpec(
                execution_id=ex.execution_id,
                image=profile.image,
                command=self.runtime.command_for(profile, artifact),
                workdir=artifact.parent,
                memory_bytes=profile.memory_limit,
                cpu_share=profile.cpu_share,
                pids_limit=profile.pids_limit,
                timeout_s=profile.timeout_s,
                allow_network=self.allow_network,
            )
            ex.handle = self.runtime.spawn(spec)
        except SpawnFailure as e:
            return self._spawn_failed(job, e)
        except OSError as e:
            return self._spawn_failed(job, SpawnFailure(f"artifact write failed: {e}"))

        if ex.cancelled:
            # cancel arrived while spawning
            self._force_kill(ex)

        deadline = Deadline(profile.timeout_s)
        try:
            done = ex.handle.wait(timeout=deadline.remaining())
        except subprocess.TimeoutExpired:
            self._force_kill(ex)
            ex.handle.drain(self.kill_grace_s)
            log.info("job_timed_out", job_id=job.id, execution_id=ex.execution_id,
                     timeout_ms=profile.timeout_ms)
            return Outcome(
                job.id, JobStatus.TIMED_OUT,
                f"Execution timed out after {profile.timeout_ms}ms; process killed",
                reason=f"timeout_{profile.timeout_ms}ms",
            )

        if ex.cancelled:
            return Outcome(job.id, JobStatus.FAILED, "Execution cancelled", reason="cancelled")
        fault = self.runtime.runtime_fault(done)
        if fault:
            return self._spawn_failed(job, SpawnFailure(fault))
        if done.exit_code == 0:
            return Outcome(job.id, JobStatus.SUCCEEDED, clip(done.stdout, self.max_output_bytes))
        return Outcome(
            job.id, JobStatus.FAILED, clip(done.stderr, self.max_output_bytes),
            reason=f"exit_{done.exit_code}",
        )

    def _spawn_failed(self, job: Job, err: SpawnFailure) -> Outcome:
        log.error("job_spawn_failed", job_id=job.id, err=str(err))
        return Outcome(job.id, JobStatus.FAILED, f"Sandbox failure: {err}",
                       reason=f"spawn_failure:{err}")

    def _force_kill(self, ex: Execution) -> None:
        # the execution identity first: a wedged handle may never deliver the signal
        try:
            self.runtime.kill(ex.execution_id, self.kill_grace_s)
        except Exception:
            log.warning("forced_kill_failed", execution_id=ex.execution_id, exc_info=True)
        if ex.handle is not None:
            try:
                ex.handle.kill()
            except OSError:
                log.debug("handle_kill_failed", execution_id=ex.execution_id)

    def _cleanup(self, ex: Execution) -> None:
        with self._lock:
            self._running.pop(ex.job_id, None)
        try:
            self.runtime.kill(ex.execution_id, self.kill_grace_s)
        except Exception:
            log.warning("cleanup_kill_failed", execution_id=ex.execution_id, exc_info=True)
        try:
            self.artifacts.remove(ex.job_id)
        except OSError:
            log.warning("artifact_cleanup_failed", job_id=ex.job_id, exc_info=True)

    def _report(self, outcome: Outcome) -> Optional[Outcome]:
        if not self.store.finish(outcome):
            log.warning("job_finish_rejected", job_id=outcome.job_id, status=outcome.status.value)
            return None
        self.reporter.publish(outcome)
        if self.gc_delivered:
            self.store.delete(outcome.job_id)
        return outcome
