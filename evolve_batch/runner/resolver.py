"""Checkpoint resolution for retried attempts."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from .config import RunnerConfig
from .models import CheckpointRef, JobAttempt, SyncError, Workspace
from .s3_sync import S3Sync, join_uri

logger = logging.getLogger("evolve_batch.runner.resolver")

_CHECKPOINT_RE = re.compile(r"^checkpoint_(\d+)$")


def list_checkpoints(checkpoint_dir: Path) -> list[CheckpointRef]:
    """All ``checkpoint_<N>`` subdirectories, newest (numerically largest N) first."""
    if not checkpoint_dir.is_dir():
        return []
    refs = []
    for entry in checkpoint_dir.iterdir():
        m = _CHECKPOINT_RE.match(entry.name)
        if m and entry.is_dir():
            refs.append(CheckpointRef(ordinal=int(m.group(1)), path=entry))
    return sorted(refs, key=lambda r: r.ordinal, reverse=True)


def is_complete(ref: CheckpointRef, marker: str = "") -> bool:
    """A checkpoint left half-written by a force-kill is empty or lacks *marker*."""
    if marker:
        return (ref.path / marker).is_file()
    return any(p.is_file() for p in ref.path.rglob("*"))


def find_latest_checkpoint(checkpoint_dir: Path, marker: str = "") -> Optional[CheckpointRef]:
    """Newest complete checkpoint under *checkpoint_dir*, or None."""
    for ref in list_checkpoints(checkpoint_dir):
        if is_complete(ref, marker):
            return ref
        logger.warning("Skipping incomplete checkpoint %s", ref.path)
    return None


class CheckpointResolver:
    """Pulls prior checkpoints from the output prefix and picks the newest."""

    def __init__(self, config: RunnerConfig, workspace: Workspace, s3: S3Sync) -> None:
        self._config = config
        self._workspace = workspace
        self._s3 = s3

    async def resolve(self, attempt: JobAttempt) -> Optional[CheckpointRef]:
        if not attempt.is_retry:
            return None

        logger.info("Attempt %d — checking S3 for a previous checkpoint...", attempt.attempt_number)
        source = join_uri(self._config.s3_output_prefix, "checkpoints")
        try:
            result = await self._s3.sync_down(source, self._workspace.checkpoint_dir)
            logger.info("Pulled %d checkpoint file(s) from %s", result.transferred, source)
        except (SyncError, ValueError) as exc:
            # Best effort: whatever arrived locally is still usable.
            logger.warning("Checkpoint download incomplete: %s", exc)

        ref = find_latest_checkpoint(self._workspace.checkpoint_dir, self._config.checkpoint_marker)
        if ref is None:
            logger.info("No checkpoint found — starting fresh.")
        else:
            logger.info("Resuming from checkpoint: %s", ref.path)
        return ref
