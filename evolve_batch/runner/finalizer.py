"""Output finalizer — last sync and outcome report."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiohttp

from .config import RunnerConfig
from .fsutil import write_json_atomic
from .models import RunOutcome, Workspace
from .synchronizer import BackgroundSynchronizer

logger = logging.getLogger("evolve_batch.runner.finalizer")

SUMMARY_FILE = "run_summary.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class OutputFinalizer:
    """Stops the background loop, then performs exactly one final sync."""

    def __init__(self, config: RunnerConfig, workspace: Workspace, synchronizer: BackgroundSynchronizer) -> None:
        self._config = config
        self._workspace = workspace
        self._synchronizer = synchronizer
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    # -- helpers --------------------------------------------------------------

    def _write_summary(self, outcome: RunOutcome) -> None:
        try:
            write_json_atomic(self._workspace.output_dir / SUMMARY_FILE, outcome.to_dict())
        except OSError as exc:
            logger.error("Could not write %s: %s", SUMMARY_FILE, exc)

    async def _report(self, outcome: RunOutcome) -> None:
        """Best-effort POST of the outcome to the status webhook."""
        if not self._config.status_webhook_url:
            return
        headers = {}
        if self._config.status_webhook_token:
            headers["Authorization"] = f"Bearer {self._config.status_webhook_token}"
        try:
            async with aiohttp.ClientSession() as sess:
                async with sess.post(
                    self._config.status_webhook_url,
                    json=outcome.to_dict(),
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=5),
                ):
                    pass
        except Exception as exc:
            logger.debug("Status report failed (non-fatal): %s", exc)

    # -- public API -----------------------------------------------------------

    async def finalize(self, outcome: RunOutcome) -> bool:
        """Returns whether the final sync succeeded. Runs at most once."""
        if self._finalized:
            logger.warning("Final sync already performed, skipping")
            return False
        self._finalized = True

        await self._synchronizer.stop()

        outcome.finished_at = utc_now()
        self._write_summary(outcome)
        ok = await self._synchronizer.sync_once()
        await self._report(outcome)

        if outcome.interrupted:
            logger.info("Cleanup done — exiting for Spot retry (cause=%s, force_killed=%s).",
                        outcome.shutdown_cause.value, outcome.force_killed)
        elif outcome.exit_code == 0:
            logger.info("=== Evolution complete. Results at %s ===", self._config.s3_output_prefix)
        else:
            logger.info("=== Evolution exited with code %d ===", outcome.exit_code)
        return ok
