from typing import Optional

from kombu import Exchange, Queue
from kombu.exceptions import KombuError

from config import CHANGES_TOPIC, DEAD_LETTER_QUEUE, IMPORT_QUEUE
from errors import PublishError
from models.schemas import ChangeNotification, IngestionMessage
from utils.logging import get_logger, log_event

logger = get_logger(__name__)

ATTEMPTS_HEADER = "x-attempts"
DEATH_REASON_HEADER = "x-death-reason"
RETRY_AT_HEADER = "x-retry-at"

# ──────────────────────────────────────────────
# DESTINATIONS
# ──────────────────────────────────────────────
import_exchange = Exchange(IMPORT_QUEUE, type="direct", durable=True)
import_queue = Queue(IMPORT_QUEUE, import_exchange, routing_key=IMPORT_QUEUE, durable=True)

dead_letter_exchange = Exchange(DEAD_LETTER_QUEUE, type="direct", durable=True)
dead_letter_queue = Queue(DEAD_LETTER_QUEUE, dead_letter_exchange, routing_key=DEAD_LETTER_QUEUE, durable=True)

changes_exchange = Exchange(CHANGES_TOPIC, type="fanout", durable=True)


def changes_queue_for(instance_name: str) -> Queue:
    """Per-instance subscriber queue; every bound queue gets its own copy of each notification."""
    return Queue(
        f"{CHANGES_TOPIC}.{instance_name}",
        changes_exchange,
        durable=False,
        auto_delete=True,
    )


RETRY_POLICY = {
    "max_retries": 3,
    "interval_start": 0,
    "interval_step": 1,
    "interval_max": 5,
}


class BrokerGateway:
    """
    Publishing side of the broker.

    The Celery app owns the one broker connection pool of the process; every
    publish borrows a producer from that pool and hands it back when done.
    """

    def __init__(self, app):
        self.app = app

    def publish(self, body: dict, exchange: Exchange, routing_key: str,
                declare=None, headers: Optional[dict] = None) -> None:
        try:
            with self.app.producer_pool.acquire(block=True) as producer:
                producer.publish(
                    body,
                    exchange=exchange,
                    routing_key=routing_key,
                    declare=declare or [],
                    serializer="json",
                    delivery_mode="persistent",
                    headers=headers or {},
                    retry=True,
                    retry_policy=RETRY_POLICY,
                )
        except (KombuError, OSError) as e:
            logger.error(f"Error publishing message to {exchange.name}: {str(e)}")
            raise PublishError(f"Publish to {exchange.name} failed: {e}") from e

    def publish_ingestion(self, message: IngestionMessage, attempts: int = 0) -> None:
        headers = {ATTEMPTS_HEADER: attempts} if attempts else None
        self.publish(message.to_wire(), import_exchange, IMPORT_QUEUE,
                     declare=[import_queue], headers=headers)
        log_event(logger, "queue.published", destination=IMPORT_QUEUE,
                  job_id=message.job_id, attempts=attempts)

    def requeue_raw(self, body, headers: dict) -> None:
        """Put an undecoded envelope back on the work queue with new headers."""
        self.publish(body, import_exchange, IMPORT_QUEUE, declare=[import_queue], headers=headers)

    def publish_dead_letter(self, body, headers: dict) -> None:
        self.publish(body, dead_letter_exchange, DEAD_LETTER_QUEUE,
                     declare=[dead_letter_queue], headers=headers)
        log_event(logger, "queue.dead_lettered", level="WARNING", destination=DEAD_LETTER_QUEUE,
                  reason=headers.get(DEATH_REASON_HEADER, ""))

    def broadcast_changes(self, notification: ChangeNotification) -> None:
        self.publish(notification.to_wire(), changes_exchange, "", declare=[changes_exchange])
        log_event(logger, "topic.published", destination=CHANGES_TOPIC,
                  total_changes=notification.total_changes)
