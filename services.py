import threading
from functools import cached_property, lru_cache

from broker import BrokerGateway
from change_detector import ChangeDetector, ChangeNotificationListener, RecurringTask
from config import Settings
from consumer import DeliveryHandler, IngestionProcessor
from csv_parser import CsvRowParser
from exporter import ExportService
from orchestrator import ImportOrchestrator
from repository import JobLedger, RecordStore, build_session_factory, create_schema
from utils.logging import get_logger
from utils.spaces import ObjectStore


class Services:
    """
    Process-wide component wiring. Each component is built on first use, so
    an API process never opens what only the worker needs and vice versa.
    """

    def __init__(self, settings: Settings, app=None):
        self.settings = settings
        self._app = app
        # set once at worker shutdown; observed by the consumer and the detector loop
        self.shutdown = threading.Event()

    @cached_property
    def app(self):
        if self._app is None:
            from celery_app import app
            self._app = app
        return self._app

    @cached_property
    def session_factory(self):
        factory = build_session_factory(self.settings.database_url)
        create_schema(factory)
        return factory

    @cached_property
    def store(self) -> ObjectStore:
        return ObjectStore.from_settings(self.settings)

    @cached_property
    def ledger(self) -> JobLedger:
        return JobLedger(self.session_factory)

    @cached_property
    def records(self) -> RecordStore:
        return RecordStore(self.session_factory)

    @cached_property
    def gateway(self) -> BrokerGateway:
        return BrokerGateway(self.app)

    @cached_property
    def orchestrator(self) -> ImportOrchestrator:
        return ImportOrchestrator(self.store, self.ledger, self.gateway)

    @cached_property
    def processor(self) -> IngestionProcessor:
        return IngestionProcessor(self.store, self.ledger, self.records, self.session_factory,
                                  parser=CsvRowParser())

    @cached_property
    def delivery_handler(self) -> DeliveryHandler:
        return DeliveryHandler(self.processor, self.gateway, self.ledger,
                               max_attempts=self.settings.max_delivery_attempts,
                               backoff_seconds=self.settings.retry_backoff_seconds,
                               backoff_max_seconds=self.settings.retry_backoff_max_seconds,
                               shutdown=self.shutdown)

    @cached_property
    def detector(self) -> ChangeDetector:
        return ChangeDetector(
            self.records,
            self.gateway,
            instance_name=self.settings.instance_name,
            interval_seconds=self.settings.change_check_interval_seconds,
            publish_enabled=self.settings.change_publish_enabled,
            sink=get_logger("change_detector.events"),
        )

    @cached_property
    def detector_task(self) -> RecurringTask:
        return RecurringTask(
            name=f"change-detector[{self.settings.instance_name}]",
            fn=self.detector.detect_and_publish,
            interval=self.settings.change_check_interval_seconds,
            warmup=self.settings.change_check_warmup_seconds,
            stop_event=self.shutdown,
            sink=get_logger("change_detector.events"),
        )

    @cached_property
    def change_listener(self) -> ChangeNotificationListener:
        return ChangeNotificationListener(self.settings.instance_name)

    @cached_property
    def exporter(self) -> ExportService:
        def enqueue(job_id, source_job_id):
            from tasks import export_records
            return export_records.delay(job_id, source_job_id).id

        return ExportService(self.store, self.ledger, self.records, enqueue=enqueue,
                             url_ttl=self.settings.signed_url_ttl_seconds)


@lru_cache(maxsize=1)
def get_services() -> Services:
    return Services(Settings.from_env())
