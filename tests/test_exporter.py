import io
import json
import os
import sys
import unittest
from datetime import datetime
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from errors import JobNotFoundError, StorageError
from exporter import EXPORT_COLUMNS, ExportService
from models.table_models import JobKind, JobStatus, Record, new_id
from repository import JobLedger, RecordStore, session_scope
from tests.fakes import FakeStore, make_session_factory


class TestExportService(unittest.TestCase):

    def setUp(self):
        self.factory = make_session_factory()
        self.store = FakeStore()
        self.ledger = JobLedger(self.factory)
        self.records = RecordStore(self.factory)
        self.enqueued = []
        self.service = ExportService(self.store, self.ledger, self.records,
                                     enqueue=lambda job_id, source: self.enqueued.append((job_id, source)) or "task-1")

        self.source = self.ledger.create("people.csv")
        rows = [
            Record(id=new_id(), job_id=self.source.id, file_name="people.csv",
                   data={"name": "alice", "note": "x, y"}, imported_at=datetime(2024, 1, 1)),
            Record(id=new_id(), job_id=self.source.id, file_name="people.csv",
                   data={"name": "bob"}, imported_at=datetime(2024, 1, 2)),
            Record(id=new_id(), job_id=self.source.id, file_name="people.csv",
                   data={"name": "gone"}, imported_at=datetime(2024, 1, 3), is_deleted=True),
        ]
        with session_scope(self.factory) as session:
            self.records.add_all(session, rows)

    def test_submit_creates_pending_export_job_and_enqueues(self):
        accepted = self.service.submit("dump.csv", self.source.id)

        job = self.ledger.get(accepted.job_id)
        self.assertEqual(job.kind, JobKind.export)
        self.assertEqual(job.status, JobStatus.pending)
        self.assertEqual(accepted.task_id, "task-1")
        self.assertEqual(self.enqueued, [(job.id, self.source.id)])

    def test_submit_for_unknown_source_job(self):
        with self.assertRaises(JobNotFoundError):
            self.service.submit("dump.csv", "missing")

    def test_run_uploads_csv_and_completes_job(self):
        accepted = self.service.submit("dump.csv")

        url = self.service.run(accepted.job_id)

        job = self.ledger.get(accepted.job_id)
        self.assertEqual(job.status, JobStatus.completed)
        self.assertIn(job.file_name, url)
        frame = pd.read_csv(io.BytesIO(self.store.objects[job.file_name]))
        self.assertEqual(list(frame.columns), EXPORT_COLUMNS)
        self.assertEqual(len(frame), 2)
        self.assertEqual(json.loads(frame.loc[0, "Data"]), {"name": "alice", "note": "x, y"})

    def test_failed_upload_marks_job_failed(self):
        accepted = self.service.submit("dump.csv")
        self.store.fail_put = True

        with self.assertRaises(StorageError):
            self.service.run(accepted.job_id)

        self.assertEqual(self.ledger.get(accepted.job_id).status, JobStatus.failed)


if __name__ == "__main__":
    unittest.main()
