from __future__ import annotations
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from string import Formatter
from typing import Optional

from pydantic import BaseModel, field_validator

from .utils import parse_size, parse_ts, utcnow


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    REJECTED = "REJECTED"

    @property
    def terminal(self) -> bool:
        return _RANK[self] >= 2

    def can_become(self, other: "JobStatus") -> bool:
        """Transitions only move forward: QUEUED < RUNNING < terminal."""
        if other is JobStatus.REJECTED or self is JobStatus.REJECTED:
            return False
        return _RANK[other] > _RANK[self]


_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.FAILED: 2,
    JobStatus.TIMED_OUT: 2,
    JobStatus.REJECTED: 2,
}


TEMPLATE_FIELDS = {"file", "dir"}


class LanguageProfile(BaseModel):
    id: str
    image: str                 # isolated runtime image to boot
    invocation: str            # shell line, {file} / {dir} substituted per runtime
    file_extension: str
    memory_limit: int = 128 * 1024 * 1024
    cpu_share: float = 0.5
    timeout_ms: int = 5000
    pids_limit: int = 64

    @field_validator("memory_limit", mode="before")
    @classmethod
    def _memory(cls, v):
        return parse_size(v)

    @field_validator("file_extension")
    @classmethod
    def _ext(cls, v: str) -> str:
        return v.lstrip(".")

    @field_validator("invocation")
    @classmethod
    def _placeholders(cls, v: str) -> str:
        # shell braces must be doubled: ${{HOME}}, awk '{{print}}'
        try:
            names = {name for _, name, _, _ in Formatter().parse(v) if name is not None}
        except ValueError as e:
            raise ValueError(f"malformed invocation template: {e}") from e
        unknown = names - TEMPLATE_FIELDS
        if unknown:
            raise ValueError(f"unknown invocation placeholders {sorted(unknown)}")
        return v

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class Job:
    id: str
    language: str
    source_code: str
    submitted_at: datetime = field(default_factory=utcnow)
    attempt: int = 1

    def to_json(self) -> str:
        d = asdict(self)
        d["submitted_at"] = self.submitted_at.isoformat()
        return json.dumps(d)

    @classmethod
    def from_json(cls, raw) -> "Job":
        d = json.loads(raw)
        d["submitted_at"] = parse_ts(d["submitted_at"])
        return cls(**d)


@dataclass
class Outcome:
    job_id: str
    status: JobStatus
    output: str
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def public(self) -> dict:
        return {"job_id": self.job_id, "status": self.status.value, "output": self.output}

    def to_json(self) -> str:
        return json.dumps({
            **self.public(),
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        })

    @classmethod
    def from_json(cls, raw) -> "Outcome":
        d = json.loads(raw)
        return cls(
            job_id=d["job_id"],
            status=JobStatus(d["status"]),
            output=d.get("output") or "",
            reason=d.get("reason"),
            started_at=parse_ts(d["started_at"]) if d.get("started_at") else None,
            finished_at=parse_ts(d["finished_at"]) if d.get("finished_at") else None,
        )
