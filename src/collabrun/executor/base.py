from __future__ import annotations
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..core.models import LanguageProfile


@dataclass
class ExecSpec:
    execution_id: str
    image: str
    command: str              # invocation with {file}/{dir} already substituted
    workdir: Path             # host directory holding the artifact
    memory_bytes: int
    cpu_share: float
    pids_limit: int
    timeout_s: float
    allow_network: bool = False
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class Completion:
    exit_code: int
    stdout: str
    stderr: str


class ExecutionHandle:
    """The process a runtime spawned for one execution identity."""

    def __init__(self, execution_id: str, proc: subprocess.Popen):
        self.execution_id = execution_id
        self.proc = proc

    @property
    def pid(self) -> int:
        return self.proc.pid

    def wait(self, timeout: float) -> Completion:
        """Timed wait for natural completion; raises subprocess.TimeoutExpired."""
        out, err = self.proc.communicate(timeout=timeout)
        return Completion(self.proc.returncode, out or "", err or "")

    def drain(self, timeout: float) -> Completion:
        """Collect whatever is left after a kill, never blocking past timeout."""
        try:
            out, err = self.proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            try:
                out, err = self.proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                out, err = "", ""
        rc = self.proc.returncode if self.proc.returncode is not None else -9
        return Completion(rc, out or "", err or "")

    def kill(self) -> None:
        if self.proc.poll() is None:
            self.proc.kill()


class SandboxRuntime:
    """Spawn an isolated process with resource limits; kill it by execution identity."""

    name = "base"

    def command_for(self, profile: LanguageProfile, artifact: Path) -> str:
        raise NotImplementedError

    def spawn(self, spec: ExecSpec) -> ExecutionHandle:
        raise NotImplementedError

    def kill(self, execution_id: str, grace_s: float) -> None:
        raise NotImplementedError

    def runtime_fault(self, done: Completion) -> Optional[str]:
        """Non-None when a completion reports a runtime failure rather than a program exit."""
        return None
