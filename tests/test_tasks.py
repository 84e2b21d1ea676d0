import os
import sys
import unittest
from unittest.mock import patch, MagicMock
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import tasks


class TestExportTask(unittest.TestCase):

    @patch('tasks.get_services')
    def test_export_task_returns_download_url(self, mock_get_services):
        services = MagicMock()
        services.exporter.run.return_value = "https://store.local/export.csv"
        mock_get_services.return_value = services

        result = tasks.export_records.apply(args=["job-1", None]).get()

        services.exporter.run.assert_called_once_with("job-1", None)
        self.assertEqual(result, {"job_id": "job-1", "download_url": "https://store.local/export.csv"})

    def test_export_task_is_routed_to_export_queue(self):
        routes = tasks.app.conf.task_routes
        self.assertEqual(routes["tasks.export_records"]["queue"], "csv-export")


if __name__ == "__main__":
    unittest.main()
