import os
import re
import uuid
from datetime import datetime
from typing import Optional

from errors import PublishError, ValidationError
from models.schemas import ImportAccepted, IngestionMessage
from models.table_models import Job, JobKind, utcnow
from utils.logging import get_logger, log_event

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_base_name(file_name: str) -> str:
    """Strip any client-side directory and replace characters unsafe for object keys."""
    base = file_name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    base = _UNSAFE_CHARS.sub("_", base).strip("._")
    return base or "upload"


def build_stored_name(original_file_name: str, now: Optional[datetime] = None) -> str:
    """
    Collision-resistant stored name: ``<base>_<YYYYmmdd_HHMMSS>_<8 hex><ext>``.

    The original name is kept on the Job separately for display.
    """
    base = sanitize_base_name(original_file_name)
    stem, ext = os.path.splitext(base)
    timestamp = (now or utcnow()).strftime("%Y%m%d_%H%M%S")
    unique_id = uuid.uuid4().hex[:8]
    return f"{stem or 'upload'}_{timestamp}_{unique_id}{ext.lower()}"


class ImportOrchestrator:
    """Creates a Job, uploads the file and hands an Ingestion Message to the work queue."""

    def __init__(self, store, ledger, gateway):
        self.store = store
        self.ledger = ledger
        self.gateway = gateway

    def submit(self, raw_bytes: bytes, original_file_name: str) -> str:
        """Accept an upload and return its Job id without waiting for processing."""
        return self._submit(raw_bytes, original_file_name).id

    def accept(self, raw_bytes: bytes, original_file_name: str) -> ImportAccepted:
        job = self._submit(raw_bytes, original_file_name)
        return ImportAccepted(
            job_id=job.id,
            file_name=original_file_name,
            stored_file_name=job.file_name,
            status=job.status.value,
            uploaded_at=job.created_at,
        )

    def _submit(self, raw_bytes: bytes, original_file_name: str) -> Job:
        if not raw_bytes:
            raise ValidationError("File must not be empty.")
        if original_file_name is None or not original_file_name.strip():
            raise ValidationError("File name must not be blank.")

        stored_name = build_stored_name(original_file_name)

        # 1) blob first; a failed upload leaves no job behind
        self.store.put(stored_name, raw_bytes)

        # 2) ledger row at pending
        job = self.ledger.create(stored_name, original_file_name=original_file_name.strip(),
                                 kind=JobKind.import_)

        # 3) hand off to whichever instance picks it up
        message = IngestionMessage(job_id=job.id, file_name=stored_name, uploaded_at=utcnow())
        try:
            self.gateway.publish_ingestion(message)
        except PublishError:
            # TODO: write the message to an outbox table in the job's transaction and relay it
            log_event(logger, "ingest.stranded", level="ERROR", job_id=job.id,
                      stored_file_name=stored_name)
            raise

        log_event(logger, "ingest.submitted", job_id=job.id, stored_file_name=stored_name,
                  original_file_name=original_file_name, size=len(raw_bytes))
        return job
