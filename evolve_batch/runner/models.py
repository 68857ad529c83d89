"""Runner data models, exit codes and error types."""
from __future__ import annotations

import enum
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS = 0
EXIT_STAGING_FAILED = 1          # input download failed; safe to retry
EXIT_FATAL_CONFIG = 78            # sysexits EX_CONFIG; never retried


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SupervisorError(Exception):
    """Base class for errors that end a run before the worker starts."""

    exit_code = EXIT_STAGING_FAILED


class ConfigError(SupervisorError):
    """Required environment or input configuration is missing or malformed."""

    exit_code = EXIT_FATAL_CONFIG


class InputStagingError(ConfigError):
    """A required input file is absent after staging."""


class StagingTransferError(SupervisorError):
    """Downloading the input prefix failed."""


class SyncError(Exception):
    """An S3 sync pass failed. Always treated as transient."""


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class SupervisorState(str, enum.Enum):
    STARTING = "STARTING"
    STAGING_INPUT = "STAGING_INPUT"
    RESUMING = "RESUMING"
    FRESH = "FRESH"
    RUNNING = "RUNNING"
    COMPLETING = "COMPLETING"
    INTERRUPTING = "INTERRUPTING"
    SYNCING = "SYNCING"
    EXITED = "EXITED"


class ShutdownCause(str, enum.Enum):
    PREEMPTION = "PREEMPTION"    # SIGTERM, e.g. Spot two-minute warning
    CANCEL = "CANCEL"            # SIGINT, interactive interrupt

    @classmethod
    def from_signal(cls, signum: int) -> ShutdownCause:
        return cls.CANCEL if signum == signal.SIGINT else cls.PREEMPTION


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobAttempt:
    job_id: str
    attempt_number: int = 0

    @property
    def is_retry(self) -> bool:
        return self.attempt_number > 0


@dataclass(frozen=True)
class Workspace:
    """Local scratch tree: input/ (read-only after staging), output/, output/checkpoints/."""

    root: Path

    @classmethod
    def for_job(cls, work_root: str | Path, job_id: str) -> Workspace:
        return cls(Path(work_root) / f"openevolve-{job_id}")

    @property
    def input_dir(self) -> Path:
        return self.root / "input"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def checkpoint_dir(self) -> Path:
        return self.output_dir / "checkpoints"

    @property
    def log_dir(self) -> Path:
        return self.output_dir / "logs"

    def create(self) -> Workspace:
        self.input_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self


@dataclass(frozen=True)
class StagedInputs:
    program: Path
    evaluator: Path
    config: Optional[Path] = None


@dataclass(frozen=True)
class CheckpointRef:
    ordinal: int
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class SyncResult:
    transferred: int = 0
    skipped: int = 0
    excluded: int = 0
    bytes_transferred: int = 0
    failed: list[str] = field(default_factory=list)


@dataclass
class RunOutcome:
    """What the finalizer records in run_summary.json and reports."""

    job: JobAttempt
    exit_code: int
    worker_exit_code: Optional[int] = None
    resumed_from: Optional[str] = None
    shutdown_cause: Optional[ShutdownCause] = None
    force_killed: bool = False
    started_at: str = ""
    finished_at: str = ""

    @property
    def interrupted(self) -> bool:
        return self.shutdown_cause is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job.job_id,
            "attempt": self.job.attempt_number,
            "exit_code": self.exit_code,
            "worker_exit_code": self.worker_exit_code,
            "resumed_from": self.resumed_from,
            "interrupted": self.interrupted,
            "shutdown_cause": self.shutdown_cause.value if self.shutdown_cause else None,
            "force_killed": self.force_killed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
