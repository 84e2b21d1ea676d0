from celery_app import app
from services import get_services
from utils.logging import get_logger

logger = get_logger("tasks")


@app.task(bind=True)
def export_records(self, job_id: str, source_job_id: str = None):
    """
    1) Read the stored records (optionally only one import job's)
    2) Write them out as CSV to the object store
    3) Complete the export job
    4) Return the job id and a presigned download URL for the client
    """
    logger.info(f"Export task {self.request.id} started for job {job_id}")
    url = get_services().exporter.run(job_id, source_job_id)
    return {
        "job_id": job_id,
        "download_url": url,
    }
