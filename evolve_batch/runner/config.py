"""Runner configuration loaded from environment variables."""

from __future__ import annotations

import math
import os
import shlex
import time
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .models import ConfigError, JobAttempt
from .s3_sync import parse_s3_uri

load_dotenv()

DEFAULT_SYNC_EXCLUDES = ("*.tmp", "__pycache__/*", "*/__pycache__/*")


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got {raw!r}")
    return value


def _excludes_env() -> tuple[str, ...]:
    raw = os.environ.get("SYNC_EXCLUDES")
    if raw is None:
        return DEFAULT_SYNC_EXCLUDES
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class RunnerConfig:
    """Immutable supervisor configuration."""

    # Durable storage
    s3_input_prefix: str = field(default_factory=lambda: os.environ.get("S3_INPUT_PREFIX", ""))
    s3_output_prefix: str = field(default_factory=lambda: os.environ.get("S3_OUTPUT_PREFIX", ""))
    s3_region: str = field(default_factory=lambda: os.environ.get("AWS_REGION", ""))
    s3_endpoint_url: str = field(default_factory=lambda: os.environ.get("S3_ENDPOINT_URL", ""))

    # Worker
    api_key: str = field(default_factory=lambda: os.environ.get("GEMINI_API_KEY", ""))
    iterations: int = field(default_factory=lambda: _int_env("ITERATIONS", 100))
    config_file: str = field(default_factory=lambda: os.environ.get("CONFIG_FILE", "config.yaml"))
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO").upper())
    worker_command: tuple[str, ...] = field(
        default_factory=lambda: tuple(shlex.split(os.environ.get("WORKER_COMMAND", "python /app/openevolve-run.py")))
    )

    # Job identity (set by AWS Batch)
    job_id: str = field(default_factory=lambda: os.environ.get("AWS_BATCH_JOB_ID", "") or f"local-{int(time.time())}")
    attempt: int = field(default_factory=lambda: _int_env("AWS_BATCH_JOB_ATTEMPT", 0))
    work_root: str = field(default_factory=lambda: os.environ.get("WORK_ROOT", "/tmp"))
    checkpoint_marker: str = field(default_factory=lambda: os.environ.get("CHECKPOINT_MARKER", ""))

    # Timing
    sync_interval_s: float = field(default_factory=lambda: _float_env("SYNC_INTERVAL_S", 300))
    grace_period_s: float = field(default_factory=lambda: _float_env("GRACE_PERIOD_S", 90))
    grace_poll_interval_s: float = field(default_factory=lambda: _float_env("GRACE_POLL_INTERVAL_S", 2))

    # Sync
    sync_excludes: tuple[str, ...] = field(default_factory=_excludes_env)
    sync_concurrency: int = field(default_factory=lambda: _int_env("SYNC_CONCURRENCY", 10))

    # Shutdown-path exit status, SIGTERM (preemption) vs SIGINT (cancel)
    interrupt_exit_code: int = field(default_factory=lambda: _int_env("INTERRUPT_EXIT_CODE", 0))
    cancel_exit_code: int = field(default_factory=lambda: _int_env("CANCEL_EXIT_CODE", 0))

    # Outcome report
    status_webhook_url: str = field(default_factory=lambda: os.environ.get("STATUS_WEBHOOK_URL", ""))
    status_webhook_token: str = field(default_factory=lambda: os.environ.get("STATUS_WEBHOOK_TOKEN", ""))

    @classmethod
    def from_env(cls) -> RunnerConfig:
        """Create config from environment, raising on missing required vars."""
        cfg = cls()
        missing = [
            name
            for name, value in (
                ("S3_INPUT_PREFIX", cfg.s3_input_prefix),
                ("S3_OUTPUT_PREFIX", cfg.s3_output_prefix),
                ("GEMINI_API_KEY", cfg.api_key),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Required env vars not set: {', '.join(missing)}")
        for name, uri in (("S3_INPUT_PREFIX", cfg.s3_input_prefix), ("S3_OUTPUT_PREFIX", cfg.s3_output_prefix)):
            try:
                parse_s3_uri(uri)
            except ValueError as exc:
                raise ConfigError(f"{name}: {exc}") from None
        if cfg.sync_concurrency < 1:
            raise ConfigError("SYNC_CONCURRENCY must be >= 1")
        if not cfg.worker_command:
            raise ConfigError("WORKER_COMMAND must not be empty")
        if cfg.attempt < 0:
            raise ConfigError("AWS_BATCH_JOB_ATTEMPT must be >= 0")
        if cfg.sync_interval_s <= 0 or cfg.grace_period_s < 0 or cfg.grace_poll_interval_s <= 0:
            raise ConfigError("SYNC_INTERVAL_S and GRACE_POLL_INTERVAL_S must be > 0, GRACE_PERIOD_S >= 0")
        return cfg

    @property
    def job_attempt(self) -> JobAttempt:
        return JobAttempt(job_id=self.job_id, attempt_number=self.attempt)
