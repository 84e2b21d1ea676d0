import os
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from typing import Optional

from errors import StorageError
from utils.logging import get_logger, timing_decorator

logger = get_logger(__name__)

CONTENT_TYPES = {
    ".csv": "text/csv",
    ".txt": "text/plain",
    ".json": "application/json",
    ".pdf": "application/pdf",
}


def content_type_for(name: str) -> str:
    extension = os.path.splitext(name)[1].lower()
    return CONTENT_TYPES.get(extension, "application/octet-stream")


class ObjectStore:
    """
    S3-compatible object store (MinIO, Digital Ocean Spaces, AWS S3) used as
    plain durable blob storage keyed by opaque names.
    """

    def __init__(self,
                 endpoint_url: Optional[str],
                 access_key: Optional[str],
                 secret_key: Optional[str],
                 bucket_name: str,
                 region_name: str = "us-east-1",
                 client=None):
        """Initialize connection to the bucket"""
        self.endpoint_url = endpoint_url
        self.bucket_name = bucket_name

        if client is None:
            # Validate required config
            if not all([access_key, secret_key, bucket_name]):
                raise ValueError("Missing required object store configuration (S3_ACCESS_KEY, S3_SECRET_KEY, S3_BUCKET)")

            self.session = boto3.session.Session()
            client = self.session.client(
                's3',
                region_name=region_name,
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
            )
        self.client = client
        self._bucket_checked = False

        logger.info(f"Initialized object store connection to bucket: {self.bucket_name}")

    @classmethod
    def from_settings(cls, settings) -> "ObjectStore":
        return cls(
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            bucket_name=settings.s3_bucket,
            region_name=settings.s3_region,
        )

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            self.client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise
            logger.warning(f"Bucket '{self.bucket_name}' not found. Creating a new one...")
            self.client.create_bucket(Bucket=self.bucket_name)
        self._bucket_checked = True

    @timing_decorator
    def put(self, name: str, data: bytes) -> None:
        """
        Upload raw bytes under `name`.

        Raises:
            StorageError: the bucket or the object could not be written
        """
        try:
            self._ensure_bucket()
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=name,
                Body=data,
                ACL='private',
                ContentType=content_type_for(name),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error uploading {name} to object store: {str(e)}")
            raise StorageError(f"Upload of {name} failed: {e}") from e

        logger.info(f"Successfully uploaded {name} ({len(data)} bytes)")

    @timing_decorator
    def get(self, name: str) -> bytes:
        """
        Download the object stored under `name`.

        Raises:
            StorageError: missing object or unreachable store
        """
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=name)
            body = response['Body']
            try:
                return body.read()
            finally:
                body.close()
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error downloading {name} from object store: {str(e)}")
            raise StorageError(f"Download of {name} failed: {e}") from e

    def signed_url(self, name: str, ttl: int = 3600) -> str:
        """
        Generate a presigned URL for temporary access to a file

        Args:
            name: Object name in the bucket
            ttl: Expiration time in seconds (default: 1 hour)
        """
        try:
            return self.client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': name},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error generating presigned URL: {str(e)}")
            raise StorageError(f"Could not sign URL for {name}: {e}") from e
