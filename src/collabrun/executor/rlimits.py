from __future__ import annotations
import resource


def apply_rlimits(cpu_seconds: int, memory_bytes: int, nofile: int) -> None:
    """
    Runs in the child before exec: CPU time, address space, open files.
    A limit the kernel refuses is left at its inherited value.
    """
    for res, val in (
        (resource.RLIMIT_CPU, cpu_seconds),
        (resource.RLIMIT_AS, memory_bytes),
        (resource.RLIMIT_NOFILE, nofile),
    ):
        try:
            resource.setrlimit(res, (val, val))
        except (ValueError, OSError):
            pass
