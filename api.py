from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from errors import JobNotFoundError, PublishError, StorageError, ValidationError
from models.schemas import ExportAccepted, ImportAccepted
from models.table_models import JobKind, JobStatus
from services import Services, get_services
from utils.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(title="CSV ingestion")


class ExportRequest(BaseModel):
    file_name: Optional[str] = None
    source_job_id: Optional[str] = None


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StorageError)
@app.exception_handler(PublishError)
async def upstream_error_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=502, content={"detail": "Upstream service unavailable, try again later."})


@app.post("/upload", response_model=ImportAccepted)
async def upload(file: UploadFile = File(...), services: Services = Depends(get_services)):
    contents = await file.read()
    return await run_in_threadpool(services.orchestrator.accept, contents, file.filename or "")


@app.post("/export", response_model=ExportAccepted)
async def export(request: ExportRequest, services: Services = Depends(get_services)):
    return await run_in_threadpool(services.exporter.submit, request.file_name, request.source_job_id)


@app.get("/jobs")
def list_jobs(kind: Optional[JobKind] = None, status: Optional[JobStatus] = None, limit: int = 100,
              services: Services = Depends(get_services)):
    if limit < 1 or limit > 1000:
        raise HTTPException(400, "limit must be between 1 and 1000")
    return [job.to_dict() for job in services.ledger.list_jobs(kind=kind, status=status, limit=limit)]


@app.get("/jobs/{job_id}")
def get_job(job_id: str, services: Services = Depends(get_services)):
    job = services.ledger.require(job_id)
    payload = job.to_dict()
    if job.kind == JobKind.import_:
        payload["record_count"] = services.records.count_for_job(job_id)
    return payload


@app.get("/jobs/{job_id}/download-url")
def download_url(job_id: str, services: Services = Depends(get_services)):
    job = services.ledger.require(job_id)
    return {
        "job_id": job.id,
        "file_name": job.file_name,
        "url": services.store.signed_url(job.file_name, ttl=services.settings.signed_url_ttl_seconds),
    }
