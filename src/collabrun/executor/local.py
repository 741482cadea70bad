# src/collabrun/executor/local.py
from __future__ import annotations
import math
import os
import shlex
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog

from . import cgroups
from .base import Completion, ExecSpec, ExecutionHandle, SandboxRuntime
from .rlimits import apply_rlimits
from ..core.errors import SpawnFailure
from ..core.models import LanguageProfile

log = structlog.get_logger(__name__)


def _signal_group(pgid: int, sig: int) -> bool:
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False


class LocalRuntime(SandboxRuntime):
    """
    Host mode: each execution runs `sh -c <invocation>` as the leader of its own
    process group, with rlimits set in the child. Optional extras:
      - network namespace via `unshare --net --map-root-user`
      - one cgroup v2 leaf per execution identity (memory.max / cpu.max / pids.max)
    The process group id and the cgroup leaf are what `kill(execution_id)` targets.
    """

    name = "local"

    def __init__(
        self,
        *,
        shell: str = "/bin/sh",
        isolate_network: bool = True,
        use_cgroups: bool = False,
        cgroup_base: Path = Path("/sys/fs/cgroup/collabrun"),
        nofile: int = 64,
    ):
        self.shell = shell
        self.isolate_network = isolate_network
        self.use_cgroups = use_cgroups
        self.cgroup_base = cgroup_base
        self.nofile = nofile
        self._live: Dict[str, Tuple[subprocess.Popen, Optional[Path]]] = {}
        self._lock = threading.Lock()

    def command_for(self, profile: LanguageProfile, artifact: Path) -> str:
        return profile.invocation.format(
            file=shlex.quote(str(artifact)),
            dir=shlex.quote(str(artifact.parent)),
        )

    # ---------- command builders ----------

    def _argv(self, spec: ExecSpec) -> list[str]:
        argv = [self.shell, "-c", spec.command]
        if spec.allow_network or not self.isolate_network:
            return argv
        unshare = shutil.which("unshare")
        if not unshare:
            raise SpawnFailure("network isolation requested but unshare is not installed")
        return [unshare, "--net", "--map-root-user", "--"] + argv

    def _env(self, spec: ExecSpec) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(spec.workdir),
            "LANG": "C.UTF-8",
            "PYTHONUNBUFFERED": "1",
            **spec.env,
        }

    @staticmethod
    def _preexec(cpu_seconds: int, memory_bytes: int, nofile: int):
        # runs between fork and exec: setrlimit only
        def _fn():
            apply_rlimits(cpu_seconds, memory_bytes, nofile)
        return _fn

    # ---------- lifecycle ----------

    def spawn(self, spec: ExecSpec) -> ExecutionHandle:
        leaf = None
        try:
            argv = self._argv(spec)
            if self.use_cgroups:
                leaf = cgroups.create_leaf(self.cgroup_base, spec.execution_id)
                cgroups.set_limits(leaf, spec.memory_bytes, spec.cpu_share, spec.pids_limit)
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=str(spec.workdir),
                env=self._env(spec),
                start_new_session=True,
                preexec_fn=self._preexec(
                    int(math.ceil(spec.timeout_s)) + 1, spec.memory_bytes, self.nofile
                ),
            )
            if leaf is not None:
                self._attach(proc, leaf)
        except SpawnFailure:
            self._drop_leaf(leaf)
            raise
        except (OSError, RuntimeError, ValueError, subprocess.SubprocessError) as e:
            self._drop_leaf(leaf)
            raise SpawnFailure(f"{type(e).__name__}: {e}") from e

        with self._lock:
            self._live[spec.execution_id] = (proc, leaf)
        log.debug("local_spawned", execution_id=spec.execution_id, pid=proc.pid)
        return ExecutionHandle(spec.execution_id, proc)

    def kill(self, execution_id: str, grace_s: float) -> None:
        with self._lock:
            entry = self._live.pop(execution_id, None)
        if entry is None:
            log.debug("kill_unknown_execution", execution_id=execution_id)
            return
        proc, leaf = entry

        if proc.poll() is None:
            _signal_group(proc.pid, signal.SIGTERM)
            try:
                proc.wait(timeout=grace_s)
            except subprocess.TimeoutExpired:
                log.info("kill_escalated", execution_id=execution_id, grace_s=grace_s)
        # sweep the group regardless: background children outlive the leader
        _signal_group(proc.pid, signal.SIGKILL)

        if leaf is not None:
            cgroups.kill(leaf)
            log.debug("cgroup_metrics", execution_id=execution_id, **cgroups.read_metrics(leaf))
            cgroups.teardown(leaf)

    def runtime_fault(self, done: Completion) -> Optional[str]:
        if done.exit_code != 0 and done.stderr.startswith("unshare:"):
            return done.stderr.strip()
        return None

    @staticmethod
    def _attach(proc: subprocess.Popen, leaf: Path):
        # from the parent, right after the fork
        try:
            cgroups.attach(leaf, proc.pid)
        except OSError:
            _signal_group(proc.pid, signal.SIGKILL)
            proc.wait()
            raise

    def _drop_leaf(self, leaf: Optional[Path]):
        if leaf is not None:
            cgroups.teardown(leaf)
