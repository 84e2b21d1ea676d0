from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import create_engine, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from errors import InvalidTransitionError, JobNotFoundError
from models.table_models import (
    Base, Job, JobKind, JobStatus, Record, predecessors_of, utcnow,
)
from utils.logging import get_logger

logger = get_logger(__name__)


def build_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    if database_url.startswith("sqlite"):
        # the API thread pool and the detector thread share connections
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(database_url, pool_pre_ping=True, **engine_kwargs)
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(session_factory: sessionmaker) -> None:
    Base.metadata.create_all(session_factory.kw["bind"])


@contextmanager
def session_scope(session_factory: sessionmaker):
    """One unit of work: commit on success, roll back on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class JobLedger:
    """Durable record of import/export jobs and their lifecycle state."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, file_name: str, original_file_name: Optional[str] = None,
               kind: JobKind = JobKind.import_) -> Job:
        now = utcnow()
        job = Job(
            file_name=file_name,
            original_file_name=original_file_name,
            kind=kind,
            status=JobStatus.pending,
            created_at=now,
            updated_at=now,
            is_deleted=False,
        )
        with session_scope(self.session_factory) as session:
            session.add(job)
        return job

    def get(self, job_id: str, session: Optional[Session] = None) -> Optional[Job]:
        if session is not None:
            return session.get(Job, job_id)
        with session_scope(self.session_factory) as own_session:
            return own_session.get(Job, job_id)

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None or job.is_deleted:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, kind: Optional[JobKind] = None, status: Optional[JobStatus] = None,
                  limit: int = 100) -> List[Job]:
        stmt = select(Job).where(Job.is_deleted.is_(False))
        if kind is not None:
            stmt = stmt.where(Job.kind == kind)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt))

    def transition(self, session: Session, job_id: str, new_status: JobStatus) -> bool:
        """
        Move a job to `new_status` with a single conditional UPDATE.

        The WHERE clause only matches rows whose current status may legally
        precede `new_status`, so concurrent writers can never move a job
        backward.

        Returns:
            True if the row changed, False if the job already sits in
            `new_status` (a repeated terminal update).

        Raises:
            JobNotFoundError: no such job
            InvalidTransitionError: the job is in a state that cannot reach `new_status`
        """
        result = session.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.status.in_(sorted(predecessors_of(new_status), key=lambda s: s.value)))
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug(f"Job {job_id} moved to {new_status.value}")
            return True

        current = session.execute(select(Job.status).where(Job.id == job_id)).scalar_one_or_none()
        if current is None:
            raise JobNotFoundError(job_id)
        if current == new_status:
            return False
        raise InvalidTransitionError(job_id, current.value, new_status.value)

    def mark(self, job_id: str, new_status: JobStatus) -> bool:
        """Standalone transition committed in its own unit of work."""
        with session_scope(self.session_factory) as session:
            return self.transition(session, job_id, new_status)


class RecordStore:
    """Durable sink for parsed rows."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add_all(self, session: Session, records: Iterable[Record]) -> int:
        records = list(records)
        session.add_all(records)
        session.flush()
        return len(records)

    def count_for_job(self, job_id: str) -> int:
        stmt = select(func.count(Record.id)).where(Record.job_id == job_id)
        with session_scope(self.session_factory) as session:
            return session.execute(stmt).scalar_one()

    def changed_since(self, window_start: datetime) -> List[Record]:
        """Non-deleted records created or updated at or after `window_start`."""
        stmt = (
            select(Record)
            .where(Record.is_deleted.is_(False))
            .where(or_(Record.imported_at >= window_start, Record.updated_at >= window_start))
            .order_by(Record.imported_at)
        )
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt))

    def list_for_export(self, job_id: Optional[str] = None) -> List[Record]:
        stmt = select(Record).where(Record.is_deleted.is_(False))
        if job_id is not None:
            stmt = stmt.where(Record.job_id == job_id)
        stmt = stmt.order_by(Record.imported_at, Record.id)
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt))
