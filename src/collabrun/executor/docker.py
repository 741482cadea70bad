from __future__ import annotations
import math
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

import structlog

from .base import Completion, ExecSpec, ExecutionHandle, SandboxRuntime
from ..core.errors import SpawnFailure
from ..core.models import LanguageProfile

log = structlog.get_logger(__name__)

MOUNT = "/app"
# the CLI exits 125 when the engine itself fails (daemon down, bad image, ...)
ENGINE_ERROR = 125


class DockerRuntime(SandboxRuntime):
    """
    Drives the docker CLI; the container name is the execution identity.
    The named container exists before spawn returns.
    """

    name = "docker"

    def __init__(self, docker_bin: str = "docker", create_timeout_s: float = 120.0):
        self.docker_bin = docker_bin
        self.create_timeout_s = create_timeout_s

    def command_for(self, profile: LanguageProfile, artifact: Path) -> str:
        return profile.invocation.format(file=f"{MOUNT}/{artifact.name}", dir=MOUNT)

    def create_argv(self, spec: ExecSpec) -> List[str]:
        argv = [
            self.docker_bin, "create", "--rm",
            "--name", spec.execution_id,
            "--label", "collabrun.execution=1",
            "--memory", str(spec.memory_bytes),
            "--memory-swap", str(spec.memory_bytes),
            "--cpus", str(spec.cpu_share),
            "--pids-limit", str(spec.pids_limit),
            "-v", f"{spec.workdir.resolve()}:{MOUNT}",
            "-w", MOUNT,
        ]
        if not spec.allow_network:
            argv += ["--network", "none"]
        for k, v in spec.env.items():
            argv += ["-e", f"{k}={v}"]
        return argv + [spec.image, "sh", "-c", spec.command]

    def spawn(self, spec: ExecSpec) -> ExecutionHandle:
        if shutil.which(self.docker_bin) is None:
            raise SpawnFailure(f"container engine not found: {self.docker_bin}")
        argv = self.create_argv(spec)
        rc, err = self._cli(*argv[1:], timeout=self.create_timeout_s)
        if rc != 0:
            # a timed-out create may still land later
            self._cli("rm", "-f", spec.execution_id, timeout=10)
            raise SpawnFailure(err.strip() or f"docker create exited {rc}")
        try:
            proc = subprocess.Popen(
                [self.docker_bin, "start", "-a", spec.execution_id],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            self._cli("rm", "-f", spec.execution_id, timeout=10)
            raise SpawnFailure(f"{type(e).__name__}: {e}") from e
        log.debug("container_started", execution_id=spec.execution_id, pid=proc.pid)
        return ExecutionHandle(spec.execution_id, proc)

    def kill(self, execution_id: str, grace_s: float) -> None:
        rc, err = self._cli("stop", "--time", str(int(math.ceil(grace_s))), execution_id,
                            timeout=grace_s + 10)
        if rc == 0:
            return
        if "no such container" in err.lower():
            log.debug("container_already_gone", execution_id=execution_id)
            return
        log.warning("container_stop_failed", execution_id=execution_id, err=err.strip())
        self._cli("kill", execution_id, timeout=10)
        self._cli("rm", "-f", execution_id, timeout=10)

    def runtime_fault(self, done: Completion) -> Optional[str]:
        if done.exit_code == ENGINE_ERROR:
            return done.stderr.strip() or "container engine error"
        return None

    def _cli(self, *args: str, timeout: float):
        try:
            p = subprocess.run(
                [self.docker_bin, *args],
                capture_output=True, text=True, timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("docker_cli_error", args=list(args), err=str(e))
            return -1, str(e)
        return p.returncode, p.stderr or ""
