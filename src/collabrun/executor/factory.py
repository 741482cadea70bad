from __future__ import annotations

from .base import SandboxRuntime
from .docker import DockerRuntime
from .local import LocalRuntime
from ..settings import Settings


def build_runtime(s: Settings) -> SandboxRuntime:
    if s.runtime == "docker":
        return DockerRuntime(docker_bin=s.docker_bin)
    if s.runtime == "local":
        return LocalRuntime(
            isolate_network=not s.allow_network,
            use_cgroups=s.use_cgroups,
            cgroup_base=s.cgroup_base,
        )
    raise ValueError(f"unknown runtime '{s.runtime}' (expected docker|local)")
