"""OpenEvolve job runner — staging, resume, supervision and S3 sync for Spot."""

from .config import RunnerConfig
from .models import (
    CheckpointRef,
    ConfigError,
    InputStagingError,
    JobAttempt,
    RunOutcome,
    ShutdownCause,
    SupervisorState,
    SyncError,
    Workspace,
)
from .resolver import CheckpointResolver, find_latest_checkpoint
from .s3_sync import S3Sync
from .staging import InputStager
from .supervisor import Supervisor
from .synchronizer import BackgroundSynchronizer
from .finalizer import OutputFinalizer

__all__ = [
    "BackgroundSynchronizer",
    "CheckpointRef",
    "CheckpointResolver",
    "ConfigError",
    "InputStager",
    "InputStagingError",
    "JobAttempt",
    "OutputFinalizer",
    "RunOutcome",
    "RunnerConfig",
    "S3Sync",
    "ShutdownCause",
    "Supervisor",
    "SupervisorState",
    "SyncError",
    "Workspace",
    "find_latest_checkpoint",
]
