"""
MediaGate Core Settings — upload-first moderation pipeline.

Every pipeline stage reads its limits, thresholds and timeouts from here:
  - Staging limits (size, duration, accepted content types)
  - Durable store (MinIO / S3) connection
  - Analysis thresholds, per-attempt timeouts and retry budget
  - Delivery network (Bunny Stream) credentials and polling budget
  - Recovery sweeper cadence, grace period and stall window

Nothing in the pipeline approves content by default: a missing or
unreachable collaborator always resolves to failure or rejection.
"""
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _auto_device() -> str:
    try:
        import torch
        if torch.cuda.is_available():
            return "cuda"
    except ImportError:
        pass
    return "cpu"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8",
        env_prefix="MEDIAGATE_", case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    api_prefix: str = "/api/v1"

    # Header value required by the human override endpoint. Empty disables it.
    override_token: str = ""

    # ── PostgreSQL ───────────────────────────────────────────────────────
    db_host: str = "postgres"
    db_port: int = 5432
    db_user: str = "mediagate"
    db_password: str = "mediagate_secret"
    db_name: str = "mediagate"
    database_url_override: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # ── Redis / Celery ───────────────────────────────────────────────────
    celery_broker_url: str = "redis://redis:6379/1"
    celery_result_backend: str = "redis://redis:6379/2"

    # ── MinIO / S3 (durable store) ───────────────────────────────────────
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "mediagate_minio"
    minio_secret_key: str = "mediagate_minio_secret"
    minio_bucket: str = "mediagate-moderation"
    minio_secure: bool = False
    durable_key_prefix: str = "raw-media"

    # ── Staging ──────────────────────────────────────────────────────────
    staging_dir: str = "/tmp/mediagate/staging"
    max_upload_bytes: int = 512 * 1024 * 1024
    max_video_duration_seconds: float = 600.0
    allowed_content_types: List[str] = [
        "video/mp4", "video/webm", "video/quicktime",
        "image/jpeg", "image/png", "image/webp",
    ]

    # ── Pipeline ─────────────────────────────────────────────────────────
    pipeline_max_concurrency: int = 8

    # Shared retry policy for every external call (store, analysis, delivery)
    external_call_timeout_seconds: float = 30.0
    external_call_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay_seconds: float = 20.0

    # ── Analysis ─────────────────────────────────────────────────────────
    analysis_backend: str = "local"
    analysis_timeout_seconds: float = 300.0
    analysis_max_attempts: int = 3
    analysis_workers: int = 2

    # Likelihood names: VERY_UNLIKELY, UNLIKELY, POSSIBLE, LIKELY, VERY_LIKELY
    explicit_reject_likelihood: str = "LIKELY"
    image_reject_likelihood: str = "LIKELY"

    gesture_elevation_delta: float = 0.1
    gesture_min_consecutive_frames: int = 3

    frame_sample_interval: float = 0.5
    max_frames_per_video: int = 600
    pose_min_visibility: float = 0.5

    # ── ML Models (local analysis backend) ───────────────────────────────
    whisper_model: str = "large-v3"
    whisper_beam_size: int = 5
    whisper_compute_type: str = "float16"
    clip_model: str = "ViT-L-14"
    clip_pretrained: str = "laion2b_s32b_b82k"
    device: str = _auto_device()
    temp_dir: str = "/tmp/mediagate/work"

    # ── Delivery network (Bunny Stream) ──────────────────────────────────
    bunny_api_base: str = "https://video.bunnycdn.com"
    bunny_api_key: str = ""
    bunny_library_id: str = ""
    bunny_cdn_hostname: str = ""
    # Stills (profile pictures) go to a Storage Zone behind a pull zone
    bunny_storage_endpoint: str = "https://storage.bunnycdn.com"
    bunny_storage_zone: str = ""
    bunny_storage_api_key: str = ""
    bunny_storage_cdn_hostname: str = ""
    delivery_poll_attempts: int = 10
    delivery_poll_base_delay_seconds: float = 2.0
    delivery_poll_max_delay_seconds: float = 30.0

    # ── Recovery sweeper ─────────────────────────────────────────────────
    sweeper_interval_seconds: int = 60
    sweeper_grace_seconds: int = 180
    sweeper_stall_timeout_seconds: int = 3600
    sweeper_batch_size: int = 20
    # Workers refresh updated_at this often while analysing or publishing
    stage_heartbeat_seconds: float = 60.0

    @model_validator(mode="after")
    def _heartbeat_inside_grace(self) -> "Settings":
        if self.sweeper_grace_seconds > 0 and self.stage_heartbeat_seconds >= self.sweeper_grace_seconds:
            raise ValueError(
                "stage_heartbeat_seconds must be shorter than sweeper_grace_seconds, "
                "or the sweeper will restart live work"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
