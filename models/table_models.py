"""
table_models.py  –  SQLAlchemy 2.x declarative models
for the CSV ingestion service.

Two tables: the job ledger (`csv_jobs`) and the record store (`csv_records`).
Explicit Column definitions, classic `declarative_base`.
"""
from __future__ import annotations

from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import (
    Column, String, Boolean, DateTime,
    ForeignKey, JSON, Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())

# ──────────────────────────────────────────────
# ENUM DEFINITIONS
# ──────────────────────────────────────────────
class JobKind(enum.Enum):
    import_ = "import"
    export = "export"


class JobStatus(enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


# Status moves are monotonic; terminal states have no successors.
ALLOWED_TRANSITIONS = {
    JobStatus.pending: {JobStatus.processing, JobStatus.completed, JobStatus.failed},
    JobStatus.processing: {JobStatus.completed, JobStatus.failed},
    JobStatus.completed: set(),
    JobStatus.failed: set(),
}


def predecessors_of(status: JobStatus) -> set:
    """Statuses from which `status` may be reached in one step."""
    return {src for src, targets in ALLOWED_TRANSITIONS.items() if status in targets}

# ──────────────────────────────────────────────
# JOB LEDGER
# ──────────────────────────────────────────────
class Job(Base):
    __tablename__ = "csv_jobs"

    id                 = Column(String(36), primary_key=True, default=new_id)
    file_name          = Column(String(512), nullable=False)   # stored name, set once at creation
    original_file_name = Column(String(512), nullable=True)
    kind               = Column(SQLEnum(JobKind, name="csv_job_kind"), nullable=False, default=JobKind.import_)
    status             = Column(SQLEnum(JobStatus, name="csv_job_status"), nullable=False, default=JobStatus.pending)
    created_at         = Column(DateTime, nullable=False, default=utcnow)
    updated_at         = Column(DateTime, nullable=False, default=utcnow)
    is_deleted         = Column(Boolean, nullable=False, default=False)

    records = relationship("Record", back_populates="job")

    __table_args__ = (
        Index("ix_csv_jobs_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "job_id": self.id,
            "file_name": self.file_name,
            "original_file_name": self.original_file_name,
            "kind": self.kind.value if self.kind else None,
            "status": self.status.value if self.status else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

# ──────────────────────────────────────────────
# RECORD STORE
# ──────────────────────────────────────────────
class Record(Base):
    __tablename__ = "csv_records"

    id          = Column(String(36), primary_key=True, default=new_id)
    job_id      = Column(String(36), ForeignKey("csv_jobs.id"), nullable=False, index=True)
    file_name   = Column(String(512), nullable=True)
    data        = Column(JSON, nullable=False)   # column name -> string value
    imported_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at  = Column(DateTime, nullable=True)
    is_deleted  = Column(Boolean, nullable=False, default=False)

    job = relationship("Job", back_populates="records")

    __table_args__ = (
        Index("ix_csv_records_imported_at", "imported_at"),
        Index("ix_csv_records_updated_at", "updated_at"),
    )
