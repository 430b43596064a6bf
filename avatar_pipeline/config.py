"""Application configuration via environment variables."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Provider (HeyGen photo avatar API)
    heygen_api_key: str = ""
    heygen_base_url: str = "https://api.heygen.com/v2"
    heygen_upload_url: str = "https://upload.heygen.com/v1/asset"
    provider_timeout_seconds: float = 60.0
    provider_send_idempotency_key: bool = False

    # Queue
    queue_backend: str = "local"  # "local" or "redis"
    redis_url: str = "redis://127.0.0.1:6379/0"
    queue_name: str = "photo-avatar"
    queue_lease_seconds: int = 900
    worker_concurrency: int = 1
    job_max_attempts: int = 1
    job_timeout_seconds: float = Field(600.0, gt=0)

    # Pipeline
    training_delay_seconds: float = 20.0

    # Staged uploads
    upload_dir: Optional[str] = None
    temp_file_ttl_hours: int = 2
    max_upload_bytes: int = 20 * 1024 * 1024

    # Avatar record store
    avatar_store_backend: str = "memory"  # "memory" or "supabase"
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    avatars_table: str = "avatars"

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

    api_port: int = 8001

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @model_validator(mode="after")
    def check_lease_outlives_job(self) -> "Settings":
        # Leases are not renewed, so a running job must settle before its lease expires
        longest_job = self.job_timeout_seconds + self.provider_timeout_seconds
        if self.queue_lease_seconds <= longest_job:
            raise ValueError(
                f"queue_lease_seconds ({self.queue_lease_seconds}) must exceed "
                f"job_timeout_seconds + provider_timeout_seconds ({longest_job:g})"
            )
        return self


settings = Settings()
