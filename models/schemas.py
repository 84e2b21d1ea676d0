from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime


class WireModel(BaseModel):
    """Broker payloads travel as camelCase JSON documents."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class IngestionMessage(WireModel):
    # publishers differ in key casing (jobId, JobId, filename, ...)
    job_id: str = Field(alias="jobId", min_length=1,
                        validation_alias=AliasChoices("jobId", "JobId", "jobid", "job_id"))
    file_name: str = Field(default="", alias="fileName",
                           validation_alias=AliasChoices("fileName", "FileName", "filename", "file_name"))
    uploaded_at: Optional[datetime] = Field(default=None, alias="uploadedAt",
                                            validation_alias=AliasChoices("uploadedAt", "UploadedAt",
                                                                          "uploadedat", "uploaded_at"))


class ChangeNotification(WireModel):
    change_type: str = Field(default="Created", alias="changeType")
    record_ids: List[str] = Field(default_factory=list, alias="recordIds")
    total_changes: int = Field(alias="totalChanges")
    window_start: datetime = Field(alias="windowStart")
    window_end: datetime = Field(alias="windowEnd")
    instance_name: str = Field(alias="instanceName")


class DetectionOutcome(BaseModel):
    changed_count: int
    published: bool
    window_start: datetime
    window_end: datetime
    message: str


class ImportAccepted(BaseModel):
    job_id: str
    file_name: str
    stored_file_name: str
    status: str
    uploaded_at: datetime
    message: str = "File accepted; it will be processed in the background."


class ExportAccepted(BaseModel):
    job_id: str
    task_id: str
    file_name: str
    status: str
