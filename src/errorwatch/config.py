"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with the ERRORWATCH_
prefix. No config files: every deployment knob is an env var.

Learn: the auth-degraded-mode flag is the one setting with a computed
default. When ERRORWATCH_FAIL_OPEN (or the legacy AUTH_FAIL_OPEN) is unset,
the gateway fails open everywhere except production.
"""

from typing import Optional

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings

from errorwatch.queue.jobs import MIN_ATTEMPTS


class Settings(BaseSettings):
    """All app configuration. Set via ERRORWATCH_* env vars."""

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 3333
    log_level: str = "INFO"

    # Redis (queues, pub/sub, rate limit counters, issue store)
    redis_url: str = "redis://localhost:6379/0"
    queue_backend: str = "redis"  # "redis" or "memory"
    run_workers_in_process: bool = False

    # Upstream services consulted by the auth gateway
    identity_url: str = "http://localhost:3333"
    api_url: str = "http://localhost:3333"
    upstream_timeout_seconds: float = 5.0
    fail_open: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices(
            "ERRORWATCH_FAIL_OPEN", "AUTH_FAIL_OPEN", "fail_open"
        ),
    )

    # Session cache
    session_cache_ttl_seconds: float = 30.0
    session_cache_max_size: int = 1000
    session_cookie_names: list[str] = [
        "better-auth.session_token",
        "__Secure-better-auth.session_token",
    ]

    # Queues: concurrency ceiling, attempt bound, backoff base per queue
    events_concurrency: int = 10
    events_attempts: int = 3
    events_backoff_seconds: float = 1.0
    alerts_concurrency: int = 5
    alerts_attempts: int = 5
    alerts_backoff_seconds: float = 5.0
    replays_concurrency: int = 3
    replays_attempts: int = 3
    replays_backoff_seconds: float = 2.0
    worker_poll_interval: float = 0.5
    worker_id: str = "worker-1"
    dead_job_ttl_seconds: int = 86400

    # Real-time
    sse_ping_interval: float = 15.0

    # Ingest rate limiting (per API key per minute)
    ingest_rate_limit_rpm: int = 600

    # Alert delivery
    resend_api_key: str = ""
    email_from: str = "ErrorWatch <alerts@errorwatch.io>"
    dashboard_url: str = "http://localhost:3001"

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3001",
        "http://localhost:3000",
    ]

    model_config = {"env_prefix": "ERRORWATCH_", "populate_by_name": True}

    @model_validator(mode="after")
    def validate_queue_settings(self):
        """Reject configurations that would stall or unbound a queue."""
        if self.queue_backend not in ("redis", "memory"):
            raise ValueError(
                "ERRORWATCH_QUEUE_BACKEND must be 'redis' or 'memory'"
            )
        for name in ("events", "alerts", "replays"):
            if getattr(self, f"{name}_concurrency") < 1:
                raise ValueError(f"{name} concurrency must be at least 1")
            if getattr(self, f"{name}_attempts") < MIN_ATTEMPTS:
                raise ValueError(f"{name} attempts must be at least {MIN_ATTEMPTS}")
        if self.environment == "production" and self.queue_backend == "memory":
            raise ValueError(
                "The in-memory queue backend is not durable and cannot be "
                "used in production"
            )
        return self

    @property
    def auth_fail_open(self) -> bool:
        """Effective degraded-mode policy for the auth gateway."""
        if self.fail_open is not None:
            return self.fail_open
        return self.environment != "production"


# Module-level instance used by the app, workers and CLI
settings = Settings()
