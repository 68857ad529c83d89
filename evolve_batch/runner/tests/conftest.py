"""Shared fixtures for runner tests — in-memory S3, no network."""

from __future__ import annotations

import dataclasses
import sys
import textwrap
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from evolve_batch.runner.config import RunnerConfig
from evolve_batch.runner.models import SyncResult, Workspace


# ---------------------------------------------------------------------------
# In-memory aioboto3 stand-in
# ---------------------------------------------------------------------------

class FakeS3Store:
    """Objects keyed by (bucket, key) -> (body, LastModified)."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], tuple[bytes, datetime]] = {}
        self.uploads: list[str] = []
        self.downloads: list[str] = []
        self.fail_listing = False
        self.fail_keys: set[str] = set()

    def put(self, bucket: str, key: str, body: bytes) -> None:
        self.objects[(bucket, key)] = (body, datetime.now(timezone.utc))

    def keys(self, bucket: str) -> set[str]:
        return {k for b, k in self.objects if b == bucket}


class _FakePaginator:
    def __init__(self, store: FakeS3Store) -> None:
        self._store = store

    def paginate(self, Bucket: str, Prefix: str):
        return self._pages(Bucket, Prefix)

    async def _pages(self, bucket: str, prefix: str):
        if self._store.fail_listing:
            raise ConnectionError("simulated throttling")
        contents = [
            {"Key": key, "Size": len(body), "LastModified": ts}
            for (b, key), (body, ts) in sorted(self._store.objects.items())
            if b == bucket and key.startswith(prefix)
        ]
        yield {"Contents": contents} if contents else {"KeyCount": 0}


class FakeS3Client:
    def __init__(self, store: FakeS3Store) -> None:
        self._store = store

    async def __aenter__(self) -> FakeS3Client:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    def get_paginator(self, name: str) -> _FakePaginator:
        assert name == "list_objects_v2"
        return _FakePaginator(self._store)

    async def upload_file(self, Filename: str, Bucket: str, Key: str) -> None:
        if Key in self._store.fail_keys:
            raise ConnectionError(f"simulated failure for {Key}")
        path = Path(Filename)
        # Server-side LastModified is never earlier than the local write.
        now = datetime.now(timezone.utc).timestamp()
        ts = datetime.fromtimestamp(max(now, path.stat().st_mtime), timezone.utc)
        self._store.objects[(Bucket, Key)] = (path.read_bytes(), ts)
        self._store.uploads.append(Key)

    async def download_file(self, Bucket: str, Key: str, Filename: str) -> None:
        body, _ = self._store.objects[(Bucket, Key)]
        Path(Filename).write_bytes(body)
        self._store.downloads.append(Key)


class FakeSession:
    def __init__(self, store: FakeS3Store) -> None:
        self.store = store

    def client(self, service: str, **kwargs: Any) -> FakeS3Client:
        assert service == "s3"
        return FakeS3Client(self.store)


@pytest.fixture
def s3_store() -> FakeS3Store:
    return FakeS3Store()


@pytest.fixture
def fake_session(s3_store: FakeS3Store) -> FakeSession:
    return FakeSession(s3_store)


# ---------------------------------------------------------------------------
# Config / workspace
# ---------------------------------------------------------------------------

def make_config(tmp_path: Path, **overrides: Any) -> RunnerConfig:
    cfg = RunnerConfig(
        s3_input_prefix="s3://test-bucket/users/alice/job-1/input",
        s3_output_prefix="s3://test-bucket/users/alice/job-1/output",
        s3_region="us-east-1",
        s3_endpoint_url="",
        api_key="test-key",
        iterations=5,
        config_file="config.yaml",
        log_level="INFO",
        worker_command=(sys.executable, "-c", "import sys; sys.exit(0)"),
        job_id="job-1",
        attempt=0,
        work_root=str(tmp_path / "work"),
        checkpoint_marker="",
        sync_interval_s=300,
        grace_period_s=90,
        grace_poll_interval_s=2,
        sync_excludes=("*.tmp", "__pycache__/*", "*/__pycache__/*"),
        sync_concurrency=4,
        interrupt_exit_code=0,
        cancel_exit_code=0,
        status_webhook_url="",
        status_webhook_token="",
    )
    return dataclasses.replace(cfg, **overrides)


@pytest.fixture
def cfg(tmp_path: Path) -> RunnerConfig:
    return make_config(tmp_path)


@pytest.fixture
def workspace(cfg: RunnerConfig) -> Workspace:
    return Workspace.for_job(cfg.work_root, cfg.job_id).create()


def mock_s3(inputs: dict[str, str | bytes] | None = None, checkpoints: tuple[str, ...] = ()) -> MagicMock:
    """S3Sync double: sync_down materializes *inputs* / *checkpoints*, sync_up is a no-op."""
    if inputs is None:
        inputs = {"initial_program.py": "print('hi')\n", "evaluator.py": "def evaluate(p): return {}\n"}

    async def _sync_down(uri: str, local_dir: Path, excludes: tuple[str, ...] = ()) -> SyncResult:
        local_dir.mkdir(parents=True, exist_ok=True)
        if uri.rstrip("/").endswith("/checkpoints"):
            for name in checkpoints:
                (local_dir / name).mkdir(parents=True, exist_ok=True)
                (local_dir / name / "metadata.json").write_text("{}")
            return SyncResult(transferred=len(checkpoints))
        for name, body in inputs.items():
            if isinstance(body, bytes):
                (local_dir / name).write_bytes(body)
            else:
                (local_dir / name).write_text(body)
        return SyncResult(transferred=len(inputs))

    s3 = MagicMock()
    s3.sync_down = AsyncMock(side_effect=_sync_down)
    s3.sync_up = AsyncMock(return_value=SyncResult())
    return s3


def write_worker(tmp_path: Path, body: str) -> tuple[str, ...]:
    """Write a throwaway worker script and return a worker_command for it.

    The script gets the same argv as OpenEvolve. ``OUTPUT`` is the --output
    directory and ``ARGS`` the full argument list.
    """
    script = tmp_path / "fake_worker.py"
    prelude = textwrap.dedent("""\
        import json, os, signal, sys, time
        from pathlib import Path
        ARGS = sys.argv[1:]
        OUTPUT = Path(ARGS[ARGS.index("--output") + 1])
        (OUTPUT / "argv.json").write_text(json.dumps(ARGS))
    """)
    script.write_text(prelude + textwrap.dedent(body))
    return (sys.executable, str(script))
