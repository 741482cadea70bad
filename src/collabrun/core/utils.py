from __future__ import annotations
import time
import uuid
from datetime import datetime, timezone

_UNITS = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values (sqlite reads, older payloads) are taken to be UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def parse_ts(raw: str) -> datetime:
    return as_utc(datetime.fromisoformat(raw))


def new_job_id() -> str:
    return uuid.uuid4().hex


def new_execution_id(job_id: str) -> str:
    # container names and cgroup leaves both accept [a-z0-9_]
    return f"sandbox_{job_id[:12]}_{uuid.uuid4().hex[:8]}"


def parse_size(value) -> int:
    """'128m' / '1g' / '65536' / 65536 -> bytes."""
    if isinstance(value, int):
        return value
    s = str(value).strip().lower().rstrip("b")
    if s and s[-1] in _UNITS:
        return int(float(s[:-1]) * _UNITS[s[-1]])
    return int(s)


class Deadline:
    """A wall-clock budget measured on the monotonic clock."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._end = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._end - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._end
