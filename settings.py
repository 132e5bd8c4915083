"""
Runtime configuration.

Values come from environment variables (a local .env file is loaded first).
A Settings instance is built once at process start and passed explicitly to
the database, queue, storage and worker constructors.
"""
from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    storage_backend: str = Field("local", description="s3 | local")
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "us-east-1"
    bucket_name: str = "storefront"
    local_storage_dir: str = Field(default_factory=lambda: os.path.join(os.getcwd(), "data", "objects"))
    upload_dir: str = Field(default_factory=lambda: os.path.join(os.getcwd(), "public", "uploads"))
    public_prefix: str = "/uploads"
    cache_control: str = "public, max-age=86400"

    log_level: str = "INFO"
    log_file: Optional[str] = None

    worker_concurrency: int = 2
    worker_poll_interval: float = 1.0
    job_visibility_timeout: float = 300.0
    job_attempts: int = 3
    job_backoff_ms: int = 1000
    order_advance_delay_ms: int = 5000
    staff_roles: List[str] = Field(default_factory=lambda: ["admin", "staff"])

    port: int = 8000

    @property
    def use_mongo(self) -> bool:
        return bool(self.database_url and self.database_name)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.environ
        values = {
            "database_url": env.get("DATABASE_URL"),
            "database_name": env.get("DATABASE_NAME"),
            "storage_backend": env.get("STORAGE_BACKEND"),
            "s3_endpoint_url": env.get("S3_ENDPOINT_URL"),
            "s3_access_key": env.get("S3_ACCESS_KEY"),
            "s3_secret_key": env.get("S3_SECRET_KEY"),
            "s3_region": env.get("S3_REGION"),
            "bucket_name": env.get("MINIO_BUCKET_NAME"),
            "local_storage_dir": env.get("LOCAL_STORAGE_DIR"),
            "upload_dir": env.get("UPLOAD_DIR"),
            "log_level": env.get("LOG_LEVEL"),
            "log_file": env.get("LOG_FILE"),
            "worker_concurrency": env.get("WORKER_CONCURRENCY"),
            "worker_poll_interval": env.get("WORKER_POLL_INTERVAL"),
            "job_visibility_timeout": env.get("JOB_VISIBILITY_TIMEOUT"),
            "job_attempts": env.get("JOB_ATTEMPTS"),
            "job_backoff_ms": env.get("JOB_BACKOFF_MS"),
            "order_advance_delay_ms": env.get("ORDER_ADVANCE_DELAY_MS"),
            "port": env.get("PORT"),
        }
        # Unset variables fall back to the model defaults
        return cls(**{k: v for k, v in values.items() if v not in (None, "")})
