from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine

from .models import LoadSample


class GradingJob(SQLModel, table=True):
    __tablename__ = "grading_jobs"

    id: str = Field(primary_key=True)
    canceled: bool = False
    canceled_at: Optional[datetime] = None


class ServerLoad(SQLModel, table=True):
    __tablename__ = "server_loads"

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: str = Field(index=True)
    queue_name: Optional[str] = None
    average_jobs: float
    max_jobs: int
    reported_at: datetime


class Database:
    """
    Thin SQLModel wrapper for the two things the worker needs from the
    shared database: job cancellation flags and load reports.
    """

    def __init__(self, url: str = "sqlite:///./grader.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def is_canceled(self, job_id: str) -> bool:
        # jobs the database does not know about were never canceled
        with self.SessionLocal() as s:
            job = s.get(GradingJob, job_id)
            return bool(job and job.canceled)

    def mark_canceled(self, job_id: str) -> None:
        with self.SessionLocal() as s:
            job = s.get(GradingJob, job_id) or GradingJob(id=job_id)
            job.canceled = True
            job.canceled_at = datetime.now(timezone.utc)
            s.add(job)
            s.commit()

    def insert_load(self, sample: LoadSample) -> None:
        with self.SessionLocal() as s:
            s.add(ServerLoad(
                instance_id=sample.instance_id,
                queue_name=sample.queue_name,
                average_jobs=sample.average_jobs,
                max_jobs=sample.max_jobs,
                reported_at=datetime.now(timezone.utc),
            ))
            s.commit()

    def dispose(self) -> None:
        self.engine.dispose()


class NeverCanceled:
    """Cancellation check used when the worker runs without a database."""

    def is_canceled(self, job_id: str) -> bool:
        return False
