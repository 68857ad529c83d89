"""Async recursive S3 sync (compatible with AWS S3 and Cloudflare R2).

Mirrors ``aws s3 sync`` without ``--delete``: a file is transferred when it is
missing at the destination, the sizes differ, or the source copy is newer.
Nothing is ever deleted, so a pass can be repeated or abandoned at any point.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

import aioboto3

from .models import SyncError, SyncResult

if TYPE_CHECKING:
    from .config import RunnerConfig

logger = logging.getLogger("evolve_batch.runner.s3")


@dataclass(frozen=True)
class FileStat:
    size: int
    mtime: float


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Split ``s3://bucket/some/prefix`` into ``("bucket", "some/prefix/")``."""
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an s3:// URI: {uri!r}")
    bucket, _, prefix = uri[len("s3://"):].partition("/")
    if not bucket:
        raise ValueError(f"Missing bucket in {uri!r}")
    prefix = prefix.strip("/")
    return bucket, f"{prefix}/" if prefix else ""


def join_uri(uri: str, *parts: str) -> str:
    return "/".join([uri.rstrip("/"), *(p.strip("/") for p in parts)])


def is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(rel_path, p) for p in patterns)


def needs_transfer(src: FileStat, dst: FileStat | None) -> bool:
    if dst is None:
        return True
    # S3 LastModified has one-second resolution
    return src.size != dst.size or int(src.mtime) > int(dst.mtime)


def scan_local(root: Path) -> dict[str, FileStat]:
    """Map of POSIX relative path -> stat for every regular file under *root*."""
    files: dict[str, FileStat] = {}
    if not root.is_dir():
        return files
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = Path(dirpath) / name
            try:
                st = path.stat()
            except FileNotFoundError:
                continue  # removed by the worker mid-walk
            files[path.relative_to(root).as_posix()] = FileStat(st.st_size, st.st_mtime)
    return files


class S3Sync:
    """Recursive upload/download between a local directory and an S3 prefix."""

    def __init__(self, config: RunnerConfig, session: Any | None = None) -> None:
        self._config = config
        self._session = session or aioboto3.Session(region_name=config.s3_region or None)
        self._extra: dict[str, str] = {}
        if config.s3_endpoint_url:
            self._extra["endpoint_url"] = config.s3_endpoint_url

    # -- helpers --------------------------------------------------------------

    @staticmethod
    async def _list_remote(s3: Any, bucket: str, prefix: str) -> dict[str, FileStat]:
        objects: dict[str, FileStat] = {}
        paginator = s3.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                rel = obj["Key"][len(prefix):]
                if not rel or rel.endswith("/"):
                    continue
                objects[rel] = FileStat(obj["Size"], obj["LastModified"].timestamp())
        return objects

    async def _run_transfers(self, jobs: list[tuple[str, int, Any]], result: SyncResult) -> None:
        sem = asyncio.Semaphore(self._config.sync_concurrency)

        async def _one(rel: str, size: int, factory: Any) -> None:
            async with sem:
                try:
                    await factory()
                except Exception as exc:
                    logger.warning("Transfer failed for %s: %s", rel, exc)
                    result.failed.append(rel)
                    return
            result.transferred += 1
            result.bytes_transferred += size

        await asyncio.gather(*(_one(rel, size, factory) for rel, size, factory in jobs))

    # -- public API -----------------------------------------------------------

    async def sync_up(self, local_dir: Path, uri: str, excludes: Iterable[str] = ()) -> SyncResult:
        """Upload new or changed files under *local_dir* to *uri*."""
        bucket, prefix = parse_s3_uri(uri)
        excludes = tuple(excludes)
        result = SyncResult()
        try:
            async with self._session.client("s3", **self._extra) as s3:
                remote = await self._list_remote(s3, bucket, prefix)
                jobs = []
                for rel, stat in sorted(scan_local(local_dir).items()):
                    if is_excluded(rel, excludes):
                        result.excluded += 1
                    elif needs_transfer(stat, remote.get(rel)):
                        path = str(local_dir / rel)
                        key = prefix + rel
                        jobs.append((rel, stat.size, lambda p=path, k=key: s3.upload_file(p, bucket, k)))
                    else:
                        result.skipped += 1
                await self._run_transfers(jobs, result)
        except Exception as exc:
            raise SyncError(f"Upload {local_dir} -> {uri} failed: {exc}") from exc
        if result.failed:
            raise SyncError(f"{len(result.failed)} file(s) failed to upload to {uri}")
        return result

    async def sync_down(self, uri: str, local_dir: Path, excludes: Iterable[str] = ()) -> SyncResult:
        """Download new or changed objects under *uri* into *local_dir*."""
        bucket, prefix = parse_s3_uri(uri)
        excludes = tuple(excludes)
        result = SyncResult()
        local_dir.mkdir(parents=True, exist_ok=True)
        try:
            async with self._session.client("s3", **self._extra) as s3:
                remote = await self._list_remote(s3, bucket, prefix)
                local = scan_local(local_dir)
                jobs = []
                for rel, stat in sorted(remote.items()):
                    if is_excluded(rel, excludes):
                        result.excluded += 1
                    elif needs_transfer(stat, local.get(rel)):
                        jobs.append((rel, stat.size, self._downloader(s3, bucket, prefix + rel, local_dir / rel, stat)))
                    else:
                        result.skipped += 1
                await self._run_transfers(jobs, result)
        except Exception as exc:
            raise SyncError(f"Download {uri} -> {local_dir} failed: {exc}") from exc
        if result.failed:
            raise SyncError(f"{len(result.failed)} object(s) failed to download from {uri}")
        return result

    @staticmethod
    def _downloader(s3: Any, bucket: str, key: str, dest: Path, stat: FileStat) -> Any:
        async def _download() -> None:
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(f".{dest.name}.{os.getpid()}.tmp")
            try:
                await s3.download_file(bucket, key, str(tmp))
                os.replace(tmp, dest)
            finally:
                if tmp.exists():
                    tmp.unlink()
            # Stamp the remote mtime so the next pass sees the file as current.
            os.utime(dest, (stat.mtime, stat.mtime))

        return _download
