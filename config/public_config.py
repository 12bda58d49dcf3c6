from __future__ import annotations

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_state_dir() -> Path:
    """
    Default runtime state directory (idempotency DB).

      - Docker: /app/_state
      - Local/dev: <cwd>/_state
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return (Path(env) / "_state").resolve()
    if Path("/app").exists():
        return Path("/app/_state").resolve()
    return (Path.cwd() / "_state").resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    state_dir: Path = Field(default_factory=_default_state_dir, alias="BOOKING_JOBS_STATE_DIR")
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="BOOKING_JOBS_LOG_DIR"
    )

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- queue backend selection ---
    # USE_BULL is the name the Node services used for the same switch.
    use_redis_queue: bool = Field(
        default=False,
        validation_alias=AliasChoices("USE_REDIS_QUEUE", "USE_BULL", "use_bull"),
    )
    # auto: honour USE_REDIS_QUEUE; fallback: force the in-process queue
    queue_mode: str = Field(default="auto", alias="QUEUE_MODE")  # auto|fallback
    redis_connect_timeout_sec: float = Field(default=2.0, alias="REDIS_CONNECT_TIMEOUT_SEC")

    # --- Redis queue ---
    # Key prefix for queue state (no secrets)
    redis_queue_prefix: str = Field(default="bk", alias="REDIS_QUEUE_PREFIX")
    redis_queue_max_attempts: int = Field(default=5, alias="REDIS_QUEUE_MAX_ATTEMPTS")
    redis_queue_backoff_ms: int = Field(default=1_000, alias="REDIS_QUEUE_BACKOFF_MS")
    redis_queue_backoff_cap_ms: int = Field(default=60_000, alias="REDIS_QUEUE_BACKOFF_CAP_MS")
    redis_queue_consumers: int = Field(default=1, alias="REDIS_QUEUE_CONSUMERS")
    # In-flight lease; an expired lease means the consumer died and the job is re-queued.
    redis_lease_ms: int = Field(default=300_000, alias="REDIS_LEASE_MS")  # 5 minutes
    redis_poll_interval_ms: int = Field(default=250, alias="REDIS_POLL_INTERVAL_MS")

    # --- job execution ---
    job_timeout_sec: float = Field(default=120.0, alias="JOB_TIMEOUT_SEC")

    # --- worker ---
    worker_queues: str = Field(default="webhook,booking_creation", alias="WORKER_QUEUES")
    webhook_processor: str = Field(
        default="booking_jobs.processors:process_webhook", alias="WEBHOOK_PROCESSOR"
    )
    booking_processor: str = Field(
        default="booking_jobs.processors:create_booking", alias="BOOKING_PROCESSOR"
    )
    worker_shutdown_timeout_sec: float = Field(default=5.0, alias="WORKER_SHUTDOWN_TIMEOUT_SEC")
    metrics_port: int = Field(default=0, alias="METRICS_PORT")  # 0 disables

    # --- idempotency guard ---
    idempotency_db_path: Path | None = Field(default=None, alias="IDEMPOTENCY_DB_PATH")
    idempotency_claim_ttl_sec: int = Field(default=900, alias="IDEMPOTENCY_CLAIM_TTL_SEC")
    idempotency_ttl_sec: int = Field(default=30 * 86400, alias="IDEMPOTENCY_TTL_SEC")

    def worker_queue_list(self) -> list[str]:
        return [q.strip().lower() for q in str(self.worker_queues or "").split(",") if q.strip()]

    def idempotency_db(self) -> Path:
        if self.idempotency_db_path is not None:
            return Path(self.idempotency_db_path).resolve()
        return (Path(self.state_dir) / "idempotency.db").resolve()
