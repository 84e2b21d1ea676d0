import enum
import json
import threading
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

from pydantic import ValidationError as EnvelopeError
from sqlalchemy.exc import SQLAlchemyError

from broker import ATTEMPTS_HEADER, DEATH_REASON_HEADER, RETRY_AT_HEADER
from csv_parser import CsvRowParser
from errors import InvalidTransitionError, JobNotFoundError, PublishError, StorageError
from models.schemas import IngestionMessage
from models.table_models import JobStatus, utcnow
from repository import session_scope
from utils.logging import get_logger, log_event, timer

logger = get_logger(__name__)


class Outcome(enum.Enum):
    SUCCESS = "success"   # ack
    RETRY = "retry"       # redeliver, dead-letter at the attempt limit
    DROP = "drop"         # ack without retry; can never succeed


class ProcessingResult(NamedTuple):
    outcome: Outcome
    reason: str = ""
    job_id: Optional[str] = None
    record_count: int = 0

    @classmethod
    def success(cls, job_id, record_count=0, reason="completed"):
        return cls(Outcome.SUCCESS, reason, job_id, record_count)

    @classmethod
    def retry(cls, reason, job_id=None):
        return cls(Outcome.RETRY, reason, job_id)

    @classmethod
    def drop(cls, reason, job_id=None):
        return cls(Outcome.DROP, reason, job_id)


class _AlreadyCompleted(Exception):
    """Raised inside the unit of work to roll back a duplicate delivery's rows."""


def parse_envelope(body) -> IngestionMessage:
    """Accept the decoded JSON document, or raw bytes/str of it."""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    if isinstance(body, str):
        return IngestionMessage.model_validate_json(body)
    return IngestionMessage.model_validate(body)


class IngestionProcessor:
    """
    Runs one Ingestion Message through download, parse and persist.

    Never raises: every path ends in a ProcessingResult the delivery handler
    maps onto ack / redeliver / dead-letter.
    """

    def __init__(self, store, ledger, records, session_factory, parser: Optional[CsvRowParser] = None):
        self.store = store
        self.ledger = ledger
        self.records = records
        self.session_factory = session_factory
        self.parser = parser or CsvRowParser()

    def process(self, body) -> ProcessingResult:
        # 1) envelope
        try:
            message = parse_envelope(body)
        except (EnvelopeError, ValueError, TypeError) as e:
            logger.warning(f"Received malformed ingestion message, dropping: {e}")
            return ProcessingResult.drop("malformed envelope")

        job_id = message.job_id

        # 2) nothing to fetch
        if not message.file_name.strip():
            logger.warning(f"Job {job_id}: file name is empty, skipping processing")
            return ProcessingResult.drop("empty file name", job_id)

        try:
            job = self.ledger.get(job_id)
        except SQLAlchemyError as e:
            logger.error(f"Job {job_id}: ledger lookup failed: {e}")
            return ProcessingResult.retry("ledger unavailable", job_id)
        if job is None:
            logger.warning(f"Job {job_id}: no such job, dropping message")
            return ProcessingResult.drop("unknown job", job_id)
        if job.status == JobStatus.completed:
            log_event(logger, "ingest.duplicate", job_id=job_id)
            return ProcessingResult.success(job_id, reason="already completed")
        if job.status == JobStatus.failed:
            return ProcessingResult.drop("job already failed", job_id)

        try:
            # 3) download
            with timer(f"Downloading {message.file_name}", logger_name=__name__):
                raw_data = self.store.get(message.file_name)

            # 4) parse
            rows = list(self.parser.parse(raw_data, job_id=job_id, file_name=message.file_name))
            if not rows:
                logger.warning(f"Job {job_id}: {message.file_name} produced no rows")
                return ProcessingResult.retry("no rows parsed", job_id)

            # 5) + 6) rows and the terminal status commit together
            with session_scope(self.session_factory) as session:
                count = self.records.add_all(session, rows)
                if not self.ledger.transition(session, job_id, JobStatus.completed):
                    raise _AlreadyCompleted()

        except _AlreadyCompleted:
            log_event(logger, "ingest.duplicate", job_id=job_id)
            return ProcessingResult.success(job_id, reason="already completed")
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return ProcessingResult.drop("job no longer pending", job_id)
        except JobNotFoundError:
            return ProcessingResult.drop("unknown job", job_id)
        except StorageError as e:
            return ProcessingResult.retry(f"download failed: {e}", job_id)
        except SQLAlchemyError as e:
            logger.error(f"Job {job_id}: database write failed: {e}")
            return ProcessingResult.retry("database write failed", job_id)
        except Exception as e:
            logger.exception(f"Job {job_id}: unexpected error while processing")
            return ProcessingResult.retry(f"unexpected error: {e}", job_id)

        log_event(logger, "ingest.completed", job_id=job_id, records=count,
                  file_name=message.file_name)
        return ProcessingResult.success(job_id, record_count=count)


def delivery_attempts(message) -> int:
    """Deliveries already made, from our own header or RabbitMQ's quorum-queue counter."""
    headers = getattr(message, "headers", None) or {}
    counts = []
    for key in (ATTEMPTS_HEADER, "x-delivery-count"):
        try:
            counts.append(int(headers.get(key, 0) or 0))
        except (TypeError, ValueError):
            continue
    return max(counts or [0])


def retry_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at max_seconds."""
    if attempts < 1 or base_seconds <= 0:
        return 0.0
    return min(max_seconds, base_seconds * 2 ** (attempts - 1))


def retry_due_at(message) -> Optional[datetime]:
    headers = getattr(message, "headers", None) or {}
    value = headers.get(RETRY_AT_HEADER)
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning(f"Ignoring unreadable {RETRY_AT_HEADER} header: {value!r}")
        return None


class DeliveryHandler:
    """
    kombu callback for the work queue.

    Acknowledgement is the commit point: the message is acked only after the
    processor reports success or a permanent failure, or after its retry copy
    (or dead-letter copy) has been handed to the broker.

    Retry copies carry the time before which they must not be processed; the
    handler holds such a copy until then, so consecutive attempts are spaced
    by an exponential backoff.
    """

    def __init__(self, processor: IngestionProcessor, gateway, ledger,
                 max_attempts: int = 5, shutdown: Optional[threading.Event] = None,
                 backoff_seconds: float = 2.0, backoff_max_seconds: float = 60.0,
                 clock: Callable[[], datetime] = utcnow):
        self.processor = processor
        self.gateway = gateway
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.shutdown = shutdown or threading.Event()
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.clock = clock

    def __call__(self, body, message):
        if self.shutdown.is_set() or not self.wait_until_due(message):
            # leave it for another instance
            message.requeue()
            return

        result = self.processor.process(body)
        self.settle(result, body, message)

    def wait_until_due(self, message) -> bool:
        """Block until the message's retry time; False if shutdown began meanwhile."""
        due_at = retry_due_at(message)
        if due_at is None:
            return True
        delay = (due_at - self.clock()).total_seconds()
        if delay <= 0:
            return True
        logger.debug(f"Holding retried message for {delay:.1f}s")
        return not self.shutdown.wait(min(delay, self.backoff_max_seconds))

    def on_decode_error(self, message, exc):
        logger.warning(f"Undecodable message on work queue, dropping: {exc}")
        message.ack()

    def settle(self, result: ProcessingResult, body, message) -> None:
        if result.outcome in (Outcome.SUCCESS, Outcome.DROP):
            message.ack()
            log_event(logger, "queue.acked", job_id=result.job_id or "",
                      outcome=result.outcome.value, reason=result.reason)
            return

        attempts = delivery_attempts(message) + 1
        headers = {ATTEMPTS_HEADER: attempts, DEATH_REASON_HEADER: result.reason}
        try:
            if attempts >= self.max_attempts:
                self.dead_letter(result, body, headers)
            else:
                delay = retry_delay(attempts, self.backoff_seconds, self.backoff_max_seconds)
                headers[RETRY_AT_HEADER] = (self.clock() + timedelta(seconds=delay)).isoformat()
                self.gateway.requeue_raw(self._republishable(body, message), headers)
                log_event(logger, "queue.retry_scheduled", level="WARNING",
                          job_id=result.job_id or "", attempts=attempts,
                          delay_seconds=delay, reason=result.reason)
        except PublishError:
            # plain redelivery; the broker keeps the original
            logger.error(f"Could not re-publish message for job {result.job_id}; requeueing original")
            message.requeue()
            return
        message.ack()

    def dead_letter(self, result: ProcessingResult, body, headers: dict) -> None:
        headers = dict(headers)
        if result.job_id:
            headers["x-job-id"] = result.job_id
        self.gateway.publish_dead_letter(body, headers)
        if not result.job_id:
            return
        try:
            self.ledger.mark(result.job_id, JobStatus.failed)
            log_event(logger, "ingest.failed", level="ERROR", job_id=result.job_id,
                      attempts=headers[ATTEMPTS_HEADER], reason=result.reason)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning(f"Dead-lettered job {result.job_id} left as is: {e}")
        except SQLAlchemyError as e:
            logger.error(f"Dead-lettered job {result.job_id} could not be marked failed: {e}")

    @staticmethod
    def _republishable(body, message):
        if isinstance(body, (bytes, bytearray)):
            try:
                return json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                return getattr(message, "payload", body)
        return body
