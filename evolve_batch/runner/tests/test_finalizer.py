"""Tests for OutputFinalizer."""

from __future__ import annotations

import asyncio
import dataclasses
import json
from unittest.mock import AsyncMock, patch

import pytest

from evolve_batch.runner.finalizer import SUMMARY_FILE, OutputFinalizer
from evolve_batch.runner.models import JobAttempt, RunOutcome, ShutdownCause, SyncError, SyncResult
from evolve_batch.runner.synchronizer import BackgroundSynchronizer

from .conftest import mock_s3


def _outcome(**kw) -> RunOutcome:
    return RunOutcome(job=JobAttempt("job-1", 1), exit_code=kw.pop("exit_code", 0), **kw)


@pytest.mark.asyncio
async def test_final_sync_runs_once(cfg, workspace):
    s3 = mock_s3()
    fin = OutputFinalizer(cfg, workspace, BackgroundSynchronizer(cfg, workspace, s3))

    assert await fin.finalize(_outcome()) is True
    assert await fin.finalize(_outcome()) is False

    s3.sync_up.assert_awaited_once()
    assert fin.finalized


@pytest.mark.asyncio
async def test_summary_written_before_final_sync(cfg, workspace):
    seen = {}

    async def capture(local_dir, uri, excludes=()):
        seen["summary"] = json.loads((local_dir / SUMMARY_FILE).read_text())
        return SyncResult()

    s3 = mock_s3()
    s3.sync_up = AsyncMock(side_effect=capture)
    fin = OutputFinalizer(cfg, workspace, BackgroundSynchronizer(cfg, workspace, s3))

    await fin.finalize(_outcome(
        worker_exit_code=-9,
        shutdown_cause=ShutdownCause.PREEMPTION,
        force_killed=True,
        resumed_from="/w/output/checkpoints/checkpoint_10",
    ))

    summary = seen["summary"]
    assert summary["job_id"] == "job-1"
    assert summary["attempt"] == 1
    assert summary["interrupted"] is True
    assert summary["shutdown_cause"] == "PREEMPTION"
    assert summary["force_killed"] is True
    assert summary["resumed_from"].endswith("checkpoint_10")
    assert summary["finished_at"]
    assert not list(workspace.output_dir.glob("*.tmp"))


@pytest.mark.asyncio
async def test_final_sync_failure_is_not_raised(cfg, workspace):
    s3 = mock_s3()
    s3.sync_up = AsyncMock(side_effect=SyncError("bucket unreachable"))
    fin = OutputFinalizer(cfg, workspace, BackgroundSynchronizer(cfg, workspace, s3))

    assert await fin.finalize(_outcome(exit_code=3)) is False


@pytest.mark.asyncio
async def test_final_sync_never_overlaps_periodic_sync(cfg, workspace):
    cfg = dataclasses.replace(cfg, sync_interval_s=0.01)
    active = 0
    max_active = 0

    async def slow_sync(*args, **kwargs):
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        try:
            await asyncio.sleep(0.05)
        finally:
            active -= 1
        return SyncResult()

    s3 = mock_s3()
    s3.sync_up = AsyncMock(side_effect=slow_sync)
    sync = BackgroundSynchronizer(cfg, workspace, s3)
    fin = OutputFinalizer(cfg, workspace, sync)

    sync.start()
    await asyncio.sleep(0.03)  # periodic pass in flight
    await fin.finalize(_outcome())

    assert max_active == 1
    assert active == 0
    assert not sync.is_running


@pytest.mark.asyncio
async def test_status_webhook_posted(cfg, workspace):
    cfg = dataclasses.replace(cfg, status_webhook_url="http://status.local/jobs", status_webhook_token="tok")
    fin = OutputFinalizer(cfg, workspace, BackgroundSynchronizer(cfg, workspace, mock_s3()))

    with patch.object(OutputFinalizer, "_report", new_callable=AsyncMock) as report:
        await fin.finalize(_outcome(exit_code=7, worker_exit_code=7))

    report.assert_awaited_once()
    assert report.await_args.args[0].exit_code == 7


@pytest.mark.asyncio
async def test_status_webhook_failure_is_non_fatal(cfg, workspace):
    # Nothing listens on this port; the POST fails and is only logged.
    cfg = dataclasses.replace(cfg, status_webhook_url="http://127.0.0.1:9/status")
    fin = OutputFinalizer(cfg, workspace, BackgroundSynchronizer(cfg, workspace, mock_s3()))

    assert await fin.finalize(_outcome()) is True
