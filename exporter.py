import json
from typing import Callable, Optional

import pandas as pd

from errors import InvalidTransitionError
from models.schemas import ExportAccepted
from models.table_models import JobKind, JobStatus
from orchestrator import build_stored_name
from utils.logging import get_logger, log_event, timing_decorator

logger = get_logger(__name__)

EXPORT_COLUMNS = ["Id", "JobId", "FileName", "ImportedAt", "Data"]


def records_to_frame(records) -> pd.DataFrame:
    rows = [
        {
            "Id": record.id,
            "JobId": record.job_id,
            "FileName": record.file_name or "",
            "ImportedAt": record.imported_at.isoformat() if record.imported_at else "",
            "Data": json.dumps(record.data or {}, ensure_ascii=False),
        }
        for record in records
    ]
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)


class ExportService:
    """Writes stored records back out as a CSV file in the object store."""

    def __init__(self, store, ledger, records, enqueue: Optional[Callable[[str, Optional[str]], str]] = None,
                 url_ttl: int = 7 * 24 * 60 * 60):
        self.store = store
        self.ledger = ledger
        self.records = records
        self.enqueue = enqueue
        self.url_ttl = url_ttl

    def submit(self, file_name: Optional[str] = None, source_job_id: Optional[str] = None) -> ExportAccepted:
        if source_job_id is not None:
            self.ledger.require(source_job_id)

        display_name = (file_name or "export.csv").strip() or "export.csv"
        stored_name = build_stored_name(display_name)
        job = self.ledger.create(stored_name, original_file_name=display_name, kind=JobKind.export)
        task_id = self.enqueue(job.id, source_job_id) if self.enqueue else ""

        log_event(logger, "export.submitted", job_id=job.id, source_job_id=source_job_id or "",
                  task_id=task_id)
        return ExportAccepted(job_id=job.id, task_id=task_id, file_name=stored_name,
                              status=job.status.value)

    @timing_decorator(level="INFO")
    def run(self, job_id: str, source_job_id: Optional[str] = None) -> str:
        """
        1) Mark the export job processing
        2) Read non-deleted records and render them as CSV
        3) Upload the CSV under the job's stored name
        4) Mark the job completed and return a presigned download URL
        """
        job = self.ledger.require(job_id)
        if job.status == JobStatus.completed:
            return self.store.signed_url(job.file_name, ttl=self.url_ttl)

        self.ledger.mark(job_id, JobStatus.processing)
        try:
            frame = records_to_frame(self.records.list_for_export(source_job_id))
            self.store.put(job.file_name, frame.to_csv(index=False).encode("utf-8"))
            self.ledger.mark(job_id, JobStatus.completed)
        except Exception as e:
            logger.error(f"Export job {job_id} failed: {str(e)}")
            try:
                self.ledger.mark(job_id, JobStatus.failed)
            except InvalidTransitionError as transition_error:
                logger.warning(str(transition_error))
            raise

        log_event(logger, "export.completed", job_id=job_id, rows=len(frame))
        return self.store.signed_url(job.file_name, ttl=self.url_ttl)
