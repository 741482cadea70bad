import shlex
import stat
import sys
import threading
import time
from pathlib import Path

import pytest

from collabrun.core.models import LanguageProfile
from collabrun.executor.local import LocalRuntime
from collabrun.services.artifact_store import ArtifactStore
from collabrun.services.job_queue import MemoryJobQueue
from collabrun.services.job_service import JobService
from collabrun.services.job_store import JobStore
from collabrun.services.reporter import ResultReporter
from collabrun.services.worker_pool import WorkerPool

PAYLOADS = Path(__file__).parent / "payloads"


def payload(name: str, **subs) -> str:
    code = (PAYLOADS / name).read_text(encoding="utf-8")
    for key, value in subs.items():
        code = code.replace(f"__{key.upper()}__", str(value))
    return code


def python_profile(lang_id: str = "python", timeout_ms: int = 5000) -> LanguageProfile:
    # host interpreter stands in for the container image under the local runtime
    return LanguageProfile(
        id=lang_id,
        image="python:3.9-alpine",
        invocation=f"{shlex.quote(sys.executable)} {{file}}",
        file_extension="py",
        memory_limit="1g",
        cpu_share=0.5,
        timeout_ms=timeout_ms,
    )


def wait_until(pred, timeout: float = 5.0, every: float = 0.02) -> bool:
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if pred():
            return True
        time.sleep(every)
    return pred()


def alive(pid: int) -> bool:
    # zombies count as gone: whoever reaps orphans may be slow about it
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except (FileNotFoundError, ProcessLookupError):
        return False
    return stat.rsplit(")", 1)[1].split()[0] not in ("Z", "X")


def fake_docker(tmp_path, stop_error="Error response from daemon: No such container: x", engine_up=False):
    """A docker stand-in that logs its argv and answers the way the engine does."""
    log = tmp_path / "docker.log"
    script = tmp_path / "docker"
    if engine_up:
        engine = "  create) echo 3f9c2a ;;\n  start) echo 'hello from container' ;;\n"
    else:
        engine = "  create) echo 'docker: Cannot connect to the Docker daemon.' >&2; exit 125 ;;\n"
    script.write_text(
        "#!/bin/sh\n"
        f'echo "$@" >> {log}\n'
        'case "$1" in\n'
        f"{engine}"
        f"  stop) echo '{stop_error}' >&2; exit 1 ;;\n"
        "esac\n"
        "exit 0\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script), log


class Collector:
    """Thread-safe sink for session output."""

    def __init__(self):
        self._parts = []
        self._lock = threading.Lock()

    def __call__(self, text: str):
        with self._lock:
            self._parts.append(text)

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)


@pytest.fixture
def profiles():
    return {
        "python": python_profile(),
        "pyquick": python_profile("pyquick", timeout_ms=1000),
    }


@pytest.fixture
def runtime():
    return LocalRuntime(isolate_network=False)


@pytest.fixture
def store(tmp_path):
    return JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def queue():
    return MemoryJobQueue()


@pytest.fixture
def reporter():
    return ResultReporter(ttl_s=60)


@pytest.fixture
def make_pool(queue, runtime, profiles, artifacts, store, reporter):
    pools = []

    def _make(**overrides):
        kwargs = dict(
            queue=queue, runtime=runtime, profiles=profiles, artifacts=artifacts,
            store=store, reporter=reporter, size=2, kill_grace_s=0.5,
            gc_delivered=False, poll_s=0.05,
        )
        kwargs.update(overrides)
        pool = WorkerPool(**kwargs)
        pools.append(pool)
        return pool

    yield _make
    for p in pools:
        p.stop(timeout=5)


@pytest.fixture
def pool(make_pool):
    return make_pool()


@pytest.fixture
def service(profiles, queue, store, reporter, pool):
    return JobService(profiles=profiles, queue=queue, store=store, reporter=reporter,
                      pool=pool, sync_wait_s=15)
