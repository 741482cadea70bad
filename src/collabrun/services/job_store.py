from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, and_, delete, or_, update
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, col, create_engine

from ..core.models import Job, JobStatus, Outcome
from ..core.utils import as_utc, utcnow

_LIVE = (JobStatus.QUEUED, JobStatus.RUNNING)


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    language: str
    status: JobStatus
    attempt: int = 1
    execution_id: Optional[str] = None
    submitted_at: datetime = Field(sa_type=DateTime(timezone=True))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    output: Optional[str] = None
    reason: Optional[str] = None

    def view(self) -> dict:
        return {
            "job_id": self.id,
            "language": self.language,
            "status": self.status.value,
            "attempt": self.attempt,
            "submitted_at": as_utc(self.submitted_at).isoformat(),
            "started_at": as_utc(self.started_at).isoformat() if self.started_at else None,
            "finished_at": as_utc(self.finished_at).isoformat() if self.finished_at else None,
            "output": self.output,
            "reason": self.reason,
        }


class JobStore:
    """
    Job records. Status changes are conditional UPDATEs so they are atomic
    across threads and processes and can only move forward.
    """

    def __init__(self, url: str = "sqlite:///./collabrun.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def add(self, job: Job) -> JobRecord:
        rec = JobRecord(
            id=job.id, language=job.language, status=JobStatus.QUEUED,
            attempt=job.attempt, submitted_at=job.submitted_at,
        )
        with self.SessionLocal() as s:
            s.add(rec)
            s.commit()
        return rec

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self.SessionLocal() as s:
            return s.get(JobRecord, job_id)

    def claim(self, job_id: str, execution_id: str, attempt: int = 1) -> bool:
        """QUEUED -> RUNNING; a redelivered attempt may take over a stale RUNNING record."""
        stmt = (
            update(JobRecord)
            .where(col(JobRecord.id) == job_id)
            .where(or_(
                col(JobRecord.status) == JobStatus.QUEUED,
                and_(col(JobRecord.status) == JobStatus.RUNNING, col(JobRecord.attempt) < attempt),
            ))
            .values(status=JobStatus.RUNNING, execution_id=execution_id,
                    attempt=attempt, started_at=utcnow())
        )
        with self.SessionLocal() as s:
            n = s.connection().execute(stmt).rowcount
            s.commit()
        return n == 1

    def finish(self, outcome: Outcome) -> bool:
        if not outcome.status.terminal:
            raise ValueError(f"not a terminal status: {outcome.status}")
        stmt = (
            update(JobRecord)
            .where(col(JobRecord.id) == outcome.job_id)
            .where(col(JobRecord.status).in_(_LIVE))
            .values(status=outcome.status, output=outcome.output, reason=outcome.reason,
                    finished_at=outcome.finished_at or utcnow())
        )
        with self.SessionLocal() as s:
            n = s.connection().execute(stmt).rowcount
            s.commit()
        return n == 1

    def delete(self, job_id: str) -> None:
        with self.SessionLocal() as s:
            s.connection().execute(delete(JobRecord).where(col(JobRecord.id) == job_id))
            s.commit()
