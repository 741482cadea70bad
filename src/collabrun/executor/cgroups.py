# cgroup v2 leaf per execution identity: limits, attach, forced kill, teardown
from __future__ import annotations
from pathlib import Path
import os, signal, time

import structlog

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")
CPU_PERIOD_US = 100_000


def ensure_v2():
    if not (CGROOT / "cgroup.controllers").exists():
        raise RuntimeError("cgroup v2 is required")


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise RuntimeError(f"[cgroup] write {p}='{val}' but read-back='{back}'")


def _enable_controllers(node: Path):
    """Delegate memory/pids/cpu to children (node must hold no PIDs in v2)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if not want:
        return
    if (node / "cgroup.procs").read_text().strip():
        raise PermissionError(f"{node} has PIDs; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def create_leaf(base: Path, execution_id: str) -> Path:
    ensure_v2()
    if not str(base).startswith(str(CGROOT)):
        raise ValueError(f"cgroup base must live under {CGROOT}, got {base}")
    base.mkdir(parents=True, exist_ok=True)
    _enable_controllers(base)
    leaf = base / execution_id
    leaf.mkdir(parents=True, exist_ok=True)
    return leaf


def set_limits(leaf: Path, memory_bytes: int, cpu_share: float, pids_max: int):
    _write_then_check(leaf / "memory.max", memory_bytes)
    try:
        _write_then_check(leaf / "memory.swap.max", 0)
    except FileNotFoundError:
        # swap accounting disabled on this host
        pass
    _write_then_check(leaf / "pids.max", pids_max)
    quota = max(1000, int(cpu_share * CPU_PERIOD_US))
    (leaf / "cpu.max").write_text(f"{quota} {CPU_PERIOD_US}")


def attach(leaf: Path, pid: int):
    (leaf / "cgroup.procs").write_text(str(pid))


def kill(leaf: Path):
    """SIGKILL every process in the leaf, grandchildren included."""
    f = leaf / "cgroup.kill"
    if f.exists():
        f.write_text("1")
        return
    for line in (leaf / "cgroup.procs").read_text().split():
        try:
            os.kill(int(line), signal.SIGKILL)
        except ProcessLookupError:
            pass


def read_metrics(leaf: Path) -> dict:
    out: dict[str, str] = {}
    for name in ("memory.peak", "memory.events", "cpu.stat", "pids.current"):
        p = leaf / name
        if p.exists():
            out[name] = p.read_text().strip()
    return out


def teardown(leaf: Path):
    # the leaf must be empty; processes may take a moment to leave after kill
    for _ in range(10):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            time.sleep(0.05)
    log.warning("cgroup_teardown_failed", leaf=str(leaf))
