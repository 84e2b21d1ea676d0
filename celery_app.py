from celery import Celery, bootsteps
from celery.signals import worker_shutting_down
from kombu import Consumer

from broker import changes_queue_for, import_queue
from config import EXPORT_QUEUE
from services import get_services
from utils.logging import get_logger

logger = get_logger(__name__)
settings = get_services().settings

app = Celery(
    "csv_ingest",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=["tasks"],
)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=3600,
    task_default_queue=EXPORT_QUEUE,
    task_routes={"tasks.export_records": {"queue": EXPORT_QUEUE}},
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)


class ImportQueueConsumerStep(bootsteps.ConsumerStep):
    """Competing consumer on the work queue: one unacked message per instance."""

    def get_consumers(self, channel):
        handler = get_services().delivery_handler
        consumer = Consumer(
            channel,
            queues=[import_queue],
            callbacks=[handler],
            on_decode_error=handler.on_decode_error,
            accept=["json"],
        )
        consumer.qos(prefetch_count=1)
        logger.info(f"Started listening to {import_queue.name}")
        return [consumer]


class ChangeFeedStep(bootsteps.ConsumerStep):
    """Per-instance subscription to the change fan-out exchange."""

    def get_consumers(self, channel):
        services = get_services()
        queue = changes_queue_for(services.settings.instance_name)
        listener = services.change_listener
        return [Consumer(channel, queues=[queue], callbacks=[listener], accept=["json"])]


class ChangeDetectorStep(bootsteps.StartStopStep):
    """Runs the change detector loop for as long as the worker is up."""

    def start(self, worker):
        get_services().detector_task.start()

    def stop(self, worker):
        task = get_services().detector_task
        task.stop(timeout=settings.change_check_interval_seconds)


app.steps["consumer"].add(ImportQueueConsumerStep)
app.steps["consumer"].add(ChangeFeedStep)
app.steps["worker"].add(ChangeDetectorStep)


@worker_shutting_down.connect
def signal_shutdown(sig=None, how=None, exitcode=None, **kwargs):
    logger.info(f"Worker shutting down ({how}); no new messages will be started")
    get_services().shutdown.set()
