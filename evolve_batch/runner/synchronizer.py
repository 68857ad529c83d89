"""Background synchronizer — periodic best-effort upload of the output tree."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import RunnerConfig
from .models import Workspace
from .s3_sync import S3Sync

logger = logging.getLogger("evolve_batch.runner.sync")


class BackgroundSynchronizer:
    """Uploads ``output/`` every ``sync_interval_s`` until stopped.

    A failed pass is logged and left for the next cycle: uploads are
    idempotent, so a full resync later covers anything missed.
    """

    def __init__(self, config: RunnerConfig, workspace: Workspace, s3: S3Sync) -> None:
        self._config = config
        self._workspace = workspace
        self._s3 = s3
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._in_flight = False
        self.passes = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sync_once(self) -> bool:
        """One full upload pass. Never raises except on cancellation."""
        dest = self._config.s3_output_prefix
        logger.info("Syncing outputs → %s", dest)
        self.passes += 1
        self._in_flight = True
        try:
            result = await self._s3.sync_up(self._workspace.output_dir, dest, self._config.sync_excludes)
        except Exception as exc:
            logger.warning("Sync failed, next cycle will retry: %s", exc)
            return False
        finally:
            self._in_flight = False
        logger.info("Sync complete: %d uploaded (%d bytes), %d unchanged, %d excluded",
                    result.transferred, result.bytes_transferred, result.skipped, result.excluded)
        return True

    async def _loop(self) -> None:
        interval = self._config.sync_interval_s
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            await self.sync_once()

    def start(self) -> asyncio.Task[None]:
        if self.is_running:
            return self._task  # type: ignore[return-value]
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="background-sync")
        logger.info("Background sync started (every %gs)", self._config.sync_interval_s)
        return self._task

    async def stop(self) -> None:
        """Stop the loop. Returns only once no periodic pass can still be running."""
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            if self._in_flight:
                logger.info("Cancelling in-flight periodic sync")
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Background sync stopped after %d pass(es)", self.passes)
