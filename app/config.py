"""Application configuration via environment variables."""

import os
import tempfile
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_jobs_table: str = "analysis_events"

    # Job store backend: "supabase" or "memory" (local development)
    job_store_backend: str = "supabase"

    # S3-compatible media storage (Cloudflare R2 by default)
    s3_endpoint_url: Optional[str] = None
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_region_name: str = "auto"
    s3_bucket_name: str = ""
    r2_account_id: str = ""
    media_public_base_url: Optional[str] = None
    media_custom_domain: Optional[str] = None
    upload_url_expires_seconds: int = 300

    # Analysis engine
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    engine_request_timeout_seconds: float = 600.0

    # Job processing
    max_concurrent_jobs: int = 4
    media_fetch_timeout_seconds: float = 300.0
    ingest_ceiling_seconds: float = 300.0
    ingest_poll_interval_seconds: float = 10.0
    rate_limit_backoff_seconds: float = 30.0
    rate_limit_retries: int = 1
    max_images_per_job: int = 3
    temp_media_dir: str = os.path.join(tempfile.gettempdir(), "posture_uploads")
    temp_media_ttl_hours: int = 2

    # Client polling
    poll_interval_seconds: float = 5.0

    # Service
    api_port: int = 8000
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
