import enum
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from models.schemas import ChangeNotification, DetectionOutcome
from models.table_models import utcnow
from utils.logging import get_logger, log_event

logger = get_logger(__name__)


class DetectorState(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"


class ChangeDetector:
    """
    Scans the record store for rows created or updated inside a window and
    broadcasts one Change Notification to every instance when any are found.
    """

    def __init__(self, records, gateway, instance_name: str,
                 interval_seconds: float = 60.0,
                 publish_enabled: bool = True,
                 change_type: str = "Created",
                 clock: Callable[[], datetime] = utcnow,
                 sink=None):
        self.records = records
        self.gateway = gateway
        self.instance_name = instance_name
        self.interval = timedelta(seconds=interval_seconds)
        self.publish_enabled = publish_enabled
        self.change_type = change_type
        self.clock = clock
        self.sink = sink or logger

    def window_for(self, last_check_time: Optional[datetime] = None):
        window_end = self.clock()
        window_start = last_check_time if last_check_time is not None else window_end - self.interval
        return window_start, window_end

    def detect_and_publish(self, last_check_time: Optional[datetime] = None) -> DetectionOutcome:
        window_start, window_end = self.window_for(last_check_time)
        changed_ids = [record.id for record in self.records.changed_since(window_start)]

        published = False
        try:
            if changed_ids and self.publish_enabled:
                notification = ChangeNotification(
                    change_type=self.change_type,
                    record_ids=changed_ids,
                    total_changes=len(changed_ids),
                    window_start=window_start,
                    window_end=window_end,
                    instance_name=self.instance_name,
                )
                self.gateway.broadcast_changes(notification)
                published = True
        finally:
            # logged even when the broadcast raises
            log_event(self.sink, "changes.checked", instance=self.instance_name,
                      changed=len(changed_ids), published=published,
                      window_start=window_start.isoformat(), window_end=window_end.isoformat())

        if changed_ids:
            message = f"Detected {len(changed_ids)} changed record(s) since {window_start.isoformat()}"
        else:
            message = f"No changes since {window_start.isoformat()}"

        return DetectionOutcome(
            changed_count=len(changed_ids),
            published=published,
            window_start=window_start,
            window_end=window_end,
            message=message,
        )


class RecurringTask:
    """
    Runs `fn` on its own thread: once after `warmup` seconds, then again
    `interval` seconds after each run finishes, until `stop_event` is set.

    A failing run is logged and the schedule carries on.
    """

    def __init__(self, name: str, fn: Callable[[], object], interval: float,
                 warmup: float = 0.0, stop_event: Optional[threading.Event] = None, sink=None):
        self.name = name
        self.fn = fn
        self.interval = interval
        self.warmup = warmup
        self.stop_event = stop_event or threading.Event()
        self.sink = sink or logger
        self.state = DetectorState.IDLE
        self.runs = 0
        self.failures = 0
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning(f"{self.name} already running")
            return
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        log_event(self.sink, "task.started", task=self.name, interval=self.interval, warmup=self.warmup)

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        log_event(self.sink, "task.stopped", task=self.name, runs=self.runs, failures=self.failures)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        if self.stop_event.wait(self.warmup):
            return
        while not self.stop_event.is_set():
            self.run_once()
            if self.stop_event.wait(self.interval):
                break

    def run_once(self):
        self.state = DetectorState.CHECKING
        try:
            result = self.fn()
            self.runs += 1
            return result
        except Exception as e:
            self.failures += 1
            log_event(self.sink, "task.failed", level="ERROR", task=self.name, error=repr(e))
            return None
        finally:
            self.state = DetectorState.IDLE


class ChangeNotificationListener:
    """Fan-out subscriber: records receipt of each notification, mutates nothing."""

    def __init__(self, instance_name: str, sink=None):
        self.instance_name = instance_name
        self.sink = sink or logger
        self.received = 0

    def __call__(self, body, message):
        try:
            notification = ChangeNotification.model_validate(body)
        except ValidationError as e:
            log_event(self.sink, "changes.malformed", level="WARNING",
                      instance=self.instance_name, error=str(e).splitlines()[0])
        else:
            self.received += 1
            log_event(self.sink, "changes.received", instance=self.instance_name,
                      source=notification.instance_name, total_changes=notification.total_changes,
                      window_start=notification.window_start.isoformat(),
                      window_end=notification.window_end.isoformat())
        finally:
            message.ack()
