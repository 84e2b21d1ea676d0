import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables
load_dotenv()

IMPORT_QUEUE = "csv-import-queue"
DEAD_LETTER_QUEUE = "csv-import-queue.dead-letter"
CHANGES_TOPIC = "csv-changes-topic"
EXPORT_QUEUE = "csv-export"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    database_url: str = "sqlite:///./csv_ingest.db"

    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_bucket: str = "csvfiles"
    s3_region: str = "us-east-1"

    instance_name: str = "api-unknown"
    change_check_interval_seconds: float = 60.0
    change_check_warmup_seconds: float = 10.0
    change_publish_enabled: bool = True
    max_delivery_attempts: int = 5
    retry_backoff_seconds: float = 2.0
    retry_backoff_max_seconds: float = 60.0
    signed_url_ttl_seconds: int = 7 * 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and .env, if present)."""
        env = os.environ
        values = {
            "broker_url": env.get("BROKER_URL"),
            "result_backend": env.get("RESULT_BACKEND"),
            "database_url": env.get("DATABASE_URL"),
            "s3_endpoint": env.get("S3_ENDPOINT"),
            "s3_access_key": env.get("S3_ACCESS_KEY"),
            "s3_secret_key": env.get("S3_SECRET_KEY"),
            "s3_bucket": env.get("S3_BUCKET"),
            "s3_region": env.get("S3_REGION"),
            "instance_name": env.get("INSTANCE_NAME"),
            "change_check_interval_seconds": env.get("CHANGE_CHECK_INTERVAL_SECONDS"),
            "change_check_warmup_seconds": env.get("CHANGE_CHECK_WARMUP_SECONDS"),
            "max_delivery_attempts": env.get("MAX_DELIVERY_ATTEMPTS"),
            "retry_backoff_seconds": env.get("RETRY_BACKOFF_SECONDS"),
            "retry_backoff_max_seconds": env.get("RETRY_BACKOFF_MAX_SECONDS"),
            "signed_url_ttl_seconds": env.get("SIGNED_URL_TTL_SECONDS"),
        }
        values = {k: v for k, v in values.items() if v not in (None, "")}
        values["change_publish_enabled"] = _env_bool("CHANGE_PUBLISH_ENABLED", True)
        return cls(**values)
