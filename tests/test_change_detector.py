import os
import sys
import threading
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from change_detector import ChangeDetector, ChangeNotificationListener, DetectorState, RecurringTask
from errors import PublishError
from models.schemas import ChangeNotification
from models.table_models import Record, new_id
from repository import JobLedger, RecordStore, session_scope
from tests.fakes import FakeGateway, make_message, make_session_factory

NOW = datetime(2024, 6, 1, 12, 0, 0)


class TestChangeDetector(unittest.TestCase):

    def setUp(self):
        self.factory = make_session_factory()
        self.records = RecordStore(self.factory)
        self.job = JobLedger(self.factory).create("a.csv")
        self.gateway = MagicMock(wraps=FakeGateway())
        self.detector = ChangeDetector(self.records, self.gateway, instance_name="api-1",
                                       interval_seconds=60, clock=lambda: NOW)

    def add_records(self, count, imported_at):
        rows = [Record(id=new_id(), job_id=self.job.id, file_name="a.csv", data={"n": str(i)},
                       imported_at=imported_at) for i in range(count)]
        with session_scope(self.factory) as session:
            self.records.add_all(session, rows)
        return rows

    def test_empty_window_publishes_nothing(self):
        self.add_records(2, NOW - timedelta(hours=1))

        outcome = self.detector.detect_and_publish()

        self.assertEqual(outcome.changed_count, 0)
        self.assertFalse(outcome.published)
        self.gateway.broadcast_changes.assert_not_called()

    def test_changes_are_broadcast_with_total(self):
        rows = self.add_records(4, NOW - timedelta(seconds=30))
        self.add_records(1, NOW - timedelta(hours=1))

        outcome = self.detector.detect_and_publish()

        self.assertTrue(outcome.published)
        self.assertEqual(outcome.changed_count, 4)
        self.gateway.broadcast_changes.assert_called_once()
        notification = self.gateway.broadcast_changes.call_args.args[0]
        self.assertEqual(notification.total_changes, 4)
        self.assertEqual(set(notification.record_ids), {r.id for r in rows})
        self.assertEqual(notification.instance_name, "api-1")
        self.assertEqual(notification.window_start, NOW - timedelta(seconds=60))
        self.assertEqual(notification.window_end, NOW)

    def test_explicit_last_check_time_is_used_verbatim(self):
        self.add_records(3, NOW - timedelta(hours=2))
        since = NOW - timedelta(hours=3)

        outcome = self.detector.detect_and_publish(since)

        self.assertEqual(outcome.window_start, since)
        self.assertEqual(outcome.changed_count, 3)

    def test_publish_disabled(self):
        self.add_records(2, NOW)
        self.detector.publish_enabled = False

        outcome = self.detector.detect_and_publish()

        self.assertEqual(outcome.changed_count, 2)
        self.assertFalse(outcome.published)
        self.gateway.broadcast_changes.assert_not_called()

    def test_wire_document_uses_total_changes_key(self):
        self.add_records(1, NOW)
        self.detector.detect_and_publish()
        wire = self.gateway.broadcast_changes.call_args.args[0].to_wire()
        self.assertEqual(wire["totalChanges"], 1)
        self.assertEqual(wire["instanceName"], "api-1")

    def test_outcome_is_logged_when_broadcast_fails(self):
        self.add_records(2, NOW)
        sink = MagicMock()
        gateway = FakeGateway()
        gateway.fail = True
        detector = ChangeDetector(self.records, gateway, instance_name="api-1",
                                  clock=lambda: NOW, sink=sink)

        with self.assertRaises(PublishError):
            detector.detect_and_publish()

        line = sink.info.call_args.args[0]
        self.assertTrue(line.startswith("changes.checked"))
        self.assertIn("changed=2", line)
        self.assertIn("published=False", line)


class TestRecurringTask(unittest.TestCase):

    def test_failed_run_does_not_stop_schedule(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unreachable")
            return "ok"

        task = RecurringTask("detector", flaky, interval=60, sink=MagicMock())
        self.assertIsNone(task.run_once())
        self.assertEqual(task.run_once(), "ok")
        self.assertEqual((task.runs, task.failures), (1, 1))
        self.assertEqual(task.state, DetectorState.IDLE)

    def test_runs_repeatedly_until_stopped(self):
        ran = threading.Event()
        counter = []

        def tick():
            counter.append(1)
            if len(counter) >= 3:
                ran.set()

        task = RecurringTask("detector", tick, interval=0.01, warmup=0.0, sink=MagicMock())
        task.start()
        self.assertTrue(ran.wait(5))
        task.stop(timeout=5)
        self.assertFalse(task.is_running())

    def test_stop_during_warmup_exits_promptly(self):
        fn = MagicMock()
        task = RecurringTask("detector", fn, interval=60, warmup=60, sink=MagicMock())
        task.start()
        started = time.monotonic()
        task.stop(timeout=5)
        self.assertLess(time.monotonic() - started, 5)
        self.assertFalse(task.is_running())
        fn.assert_not_called()

    def test_state_is_checking_while_running(self):
        seen = []
        task = RecurringTask("detector", lambda: seen.append(task.state), interval=60, sink=MagicMock())
        task.run_once()
        self.assertEqual(seen, [DetectorState.CHECKING])


class TestChangeNotificationListener(unittest.TestCase):

    def test_logs_receipt_and_acks(self):
        sink = MagicMock()
        listener = ChangeNotificationListener("api-2", sink=sink)
        notification = ChangeNotification(total_changes=2, record_ids=["a", "b"], window_start=NOW,
                                          window_end=NOW, instance_name="api-1")
        message = make_message()

        listener(notification.to_wire(), message)

        message.ack.assert_called_once()
        self.assertEqual(listener.received, 1)
        self.assertIn("changes.received", sink.info.call_args.args[0])

    def test_malformed_notification_is_acked(self):
        listener = ChangeNotificationListener("api-2", sink=MagicMock())
        message = make_message()
        listener({"bogus": True}, message)
        message.ack.assert_called_once()
        self.assertEqual(listener.received, 0)


if __name__ == "__main__":
    unittest.main()
