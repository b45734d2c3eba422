"""Configuration for the studio jobs engine."""

import json
import os
from typing import Any, Dict, Optional

DEFAULT_CREDIT_COSTS: Dict[str, int] = {
    "nano-banana": 3,
    "nano-banana-pro": 5,
    "turbo-1k": 8,
    "turbo-2k": 12,
    "turbo-4k": 17,
}

DEFAULT_BACKOFF_POLICY: Dict[str, Any] = {"type": "exponential", "base_seconds": 10}


class StudioJobsConfig:
    """Configuration object for studio jobs."""

    def __init__(
        self,
        db_dsn: str,
        stale_threshold_seconds: int = 90,
        max_attempts: int = 3,
        backoff_policy: Optional[Dict[str, Any]] = None,
        worker_poll_interval_seconds: float = 2.0,
        worker_batch_size: int = 10,
        worker_max_concurrent: int = 4,
        wait_poll_interval_seconds: float = 2.0,
        signup_bonus_credits: Optional[int] = None,
        credit_costs: Optional[Dict[str, int]] = None,
        auth_token: Optional[str] = None,
        upstream_chat_url: Optional[str] = None,
        upstream_image_url: Optional[str] = None,
        upstream_api_key: Optional[str] = None,
        analysis_model: str = "gpt-4o",
        upstream_timeout_seconds: float = 60.0,
        style_replicate_concurrency: int = 2,
        heartbeat_interval_seconds: Optional[float] = None,
    ):
        # A single upstream call must finish before its claim goes stale.
        if stale_threshold_seconds <= upstream_timeout_seconds:
            raise ValueError(
                f"stale_threshold_seconds ({stale_threshold_seconds}) must be greater "
                f"than upstream_timeout_seconds ({upstream_timeout_seconds})"
            )
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.db_dsn = db_dsn
        self.stale_threshold_seconds = stale_threshold_seconds
        self.max_attempts = max_attempts
        self.backoff_policy = backoff_policy or dict(DEFAULT_BACKOFF_POLICY)
        self.worker_poll_interval_seconds = worker_poll_interval_seconds
        self.worker_batch_size = worker_batch_size
        self.worker_max_concurrent = worker_max_concurrent
        self.wait_poll_interval_seconds = wait_poll_interval_seconds
        # None means "read from system_config", see JobService.get_signup_bonus
        # and JobService.get_cost_table
        self.signup_bonus_credits = signup_bonus_credits
        self.credit_costs = credit_costs
        self.auth_token = auth_token
        self.upstream_chat_url = upstream_chat_url
        self.upstream_image_url = upstream_image_url
        self.upstream_api_key = upstream_api_key
        self.analysis_model = analysis_model
        self.upstream_timeout_seconds = upstream_timeout_seconds
        self.style_replicate_concurrency = style_replicate_concurrency
        self.heartbeat_interval_seconds = (
            heartbeat_interval_seconds or stale_threshold_seconds / 3
        )

    @classmethod
    def from_env(cls) -> "StudioJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("STUDIO_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("STUDIO_JOBS_DB_DSN environment variable is required")

        max_attempts = int(os.getenv("STUDIO_JOBS_MAX_ATTEMPTS", "3"))
        if max_attempts < 1:
            raise ValueError("STUDIO_JOBS_MAX_ATTEMPTS must be at least 1")

        return cls(
            db_dsn=db_dsn,
            stale_threshold_seconds=int(
                os.getenv("STUDIO_JOBS_STALE_THRESHOLD_SECONDS", "90")
            ),
            max_attempts=max_attempts,
            backoff_policy=_json_env("STUDIO_JOBS_BACKOFF_POLICY"),
            worker_poll_interval_seconds=float(
                os.getenv("STUDIO_JOBS_WORKER_POLL_INTERVAL_SECONDS", "2")
            ),
            worker_batch_size=int(os.getenv("STUDIO_JOBS_WORKER_BATCH_SIZE", "10")),
            worker_max_concurrent=int(
                os.getenv("STUDIO_JOBS_WORKER_MAX_CONCURRENT", "4")
            ),
            wait_poll_interval_seconds=float(
                os.getenv("STUDIO_JOBS_WAIT_POLL_INTERVAL_SECONDS", "2")
            ),
            signup_bonus_credits=_int_env("STUDIO_JOBS_SIGNUP_BONUS_CREDITS"),
            credit_costs=_json_env("STUDIO_JOBS_CREDIT_COSTS"),
            auth_token=os.getenv("STUDIO_JOBS_AUTH_TOKEN"),
            upstream_chat_url=os.getenv("STUDIO_JOBS_UPSTREAM_CHAT_URL"),
            upstream_image_url=os.getenv("STUDIO_JOBS_UPSTREAM_IMAGE_URL"),
            upstream_api_key=os.getenv("STUDIO_JOBS_UPSTREAM_API_KEY"),
            analysis_model=os.getenv("STUDIO_JOBS_ANALYSIS_MODEL", "gpt-4o"),
            upstream_timeout_seconds=float(
                os.getenv("STUDIO_JOBS_UPSTREAM_TIMEOUT_SECONDS", "60")
            ),
            style_replicate_concurrency=int(
                os.getenv("STUDIO_JOBS_STYLE_REPLICATE_CONCURRENCY", "2")
            ),
            heartbeat_interval_seconds=_float_env("STUDIO_JOBS_HEARTBEAT_INTERVAL_SECONDS"),
        )


def _int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    return int(raw) if raw else None


def _float_env(name: str) -> Optional[float]:
    raw = os.getenv(name)
    return float(raw) if raw else None


def _json_env(name: str) -> Optional[Dict[str, Any]]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {name}: {e}") from e
