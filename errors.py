class IngestError(Exception):
    """Base class for errors raised by the ingestion service."""


class ValidationError(IngestError):
    """Submitted payload or file name is not acceptable."""


class StorageError(IngestError):
    """The object store could not complete an operation."""


class PublishError(IngestError):
    """A message could not be handed to the broker."""


class JobNotFoundError(IngestError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(IngestError):
    def __init__(self, job_id, current, requested):
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested
