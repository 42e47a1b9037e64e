from __future__ import annotations

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

      - Docker: /app
      - Local/dev: current working directory
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


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
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="SCROBBLER_LOG_DIR"
    )

    # --- web server ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=7000, alias="PORT")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")
    # Append scrobble lifecycle events to <log_dir>/audit.jsonl
    audit_enabled: bool = Field(default=True, alias="AUDIT_ENABLED")

    # --- scrobble policy ---
    # Fraction of runtime after which an item is marked watched (clamped to 0.1..1.0).
    scrobble_threshold: float = Field(default=0.8, alias="SCROBBLE_THRESHOLD")
    # Anything shorter (trailers, clips) never scrobbles.
    min_runtime_minutes: float = Field(default=5.0, alias="MIN_RUNTIME_MINUTES")
    # Upper bound for a single remote step inside the executor.
    scrobble_step_timeout_sec: float = Field(default=20.0, alias="SCROBBLE_STEP_TIMEOUT_SEC")
    # Worker pool size (simultaneous executions across users).
    scrobble_worker_concurrency: int = Field(default=5, alias="SCROBBLE_WORKER_CONCURRENCY")
    # Delivery attempts per job before it is dead-lettered (1 = no redelivery).
    scrobble_max_attempts: int = Field(default=1, alias="SCROBBLE_MAX_ATTEMPTS")
    # Skip a fired job when the registry already points at a newer job for the same user.
    scrobble_supersede_fence: bool = Field(default=True, alias="SCROBBLE_SUPERSEDE_FENCE")

    # --- job store ---
    # auto: Redis if configured+reachable at startup, else local timers
    # redis: require Redis
    # local: in-process timers only (not durable)
    queue_mode: str = Field(default="auto", alias="QUEUE_MODE")  # auto|redis|local
    # Redis key prefix for queue/locks (no secrets)
    redis_queue_prefix: str = Field(default="scrobble", alias="REDIS_QUEUE_PREFIX")
    # Claimed-job lease (ms). Jobs whose lease expires are re-delivered.
    redis_lock_ttl_ms: int = Field(default=120_000, alias="REDIS_LOCK_TTL_MS")
    redis_queue_backoff_ms: int = Field(default=5_000, alias="REDIS_QUEUE_BACKOFF_MS")
    redis_queue_backoff_cap_ms: int = Field(default=300_000, alias="REDIS_QUEUE_BACKOFF_CAP_MS")
    redis_poll_interval_ms: int = Field(default=500, alias="REDIS_POLL_INTERVAL_MS")
    # Meta hashes of finished/cancelled jobs are dropped; this bounds orphans.
    redis_job_meta_ttl_ms: int = Field(default=7 * 24 * 3600_000, alias="REDIS_JOB_META_TTL_MS")
    redis_dlq_max: int = Field(default=50, alias="REDIS_DLQ_MAX")

    # --- remote services ---
    simkl_api_base: str = Field(default="https://api.simkl.com", alias="SIMKL_API_BASE")
    anilist_api_url: str = Field(default="https://graphql.anilist.co", alias="ANILIST_API_URL")
    http_timeout_sec: float = Field(
        default=10.0,
        validation_alias=AliasChoices("HTTP_TIMEOUT_SEC", "REQUEST_TIMEOUT_SEC"),
    )

    # --- circuit breaker ---
    cb_fail_threshold: int = Field(default=5, alias="CB_FAIL_THRESHOLD")
    cb_cooldown_sec: int = Field(default=60, alias="CB_COOLDOWN_SEC")
