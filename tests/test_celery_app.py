import os
import sys
import threading
import unittest
from unittest.mock import patch, MagicMock
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from celery.signals import worker_shutting_down

import celery_app
from broker import import_queue
from celery_app import ChangeDetectorStep, ChangeFeedStep, ImportQueueConsumerStep, signal_shutdown


class TestWorkerSteps(unittest.TestCase):

    def setUp(self):
        self.services = MagicMock()
        self.services.settings.instance_name = "api-7"
        self.services.shutdown = threading.Event()
        patcher = patch('celery_app.get_services', return_value=self.services)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_steps_are_registered(self):
        self.assertIn(ImportQueueConsumerStep, celery_app.app.steps["consumer"])
        self.assertIn(ChangeFeedStep, celery_app.app.steps["consumer"])
        self.assertIn(ChangeDetectorStep, celery_app.app.steps["worker"])

    @patch('celery_app.Consumer')
    def test_work_queue_consumer_takes_one_message_at_a_time(self, mock_consumer):
        channel = MagicMock()
        handler = self.services.delivery_handler

        consumers = ImportQueueConsumerStep(MagicMock()).get_consumers(channel)

        mock_consumer.assert_called_once_with(
            channel,
            queues=[import_queue],
            callbacks=[handler],
            on_decode_error=handler.on_decode_error,
            accept=["json"],
        )
        mock_consumer.return_value.qos.assert_called_once_with(prefetch_count=1)
        self.assertEqual(consumers, [mock_consumer.return_value])

    @patch('celery_app.Consumer')
    def test_change_feed_binds_a_queue_per_instance(self, mock_consumer):
        channel = MagicMock()

        ChangeFeedStep(MagicMock()).get_consumers(channel)

        kwargs = mock_consumer.call_args.kwargs
        self.assertEqual(kwargs["queues"][0].name, "csv-changes-topic.api-7")
        self.assertEqual(kwargs["callbacks"], [self.services.change_listener])

    def test_detector_step_starts_and_stops_the_loop(self):
        step = ChangeDetectorStep(MagicMock())

        step.start(MagicMock())
        step.stop(MagicMock())

        self.services.detector_task.start.assert_called_once()
        self.services.detector_task.stop.assert_called_once()

    def test_signal_shutdown_sets_shared_event(self):
        signal_shutdown(sig="SIGTERM", how="Warm", exitcode=0)
        self.assertTrue(self.services.shutdown.is_set())

    def test_worker_shutting_down_signal_reaches_handler(self):
        worker_shutting_down.send(sender="worker-1", sig="SIGTERM", how="Warm", exitcode=0)
        self.assertTrue(self.services.shutdown.is_set())


if __name__ == "__main__":
    unittest.main()
