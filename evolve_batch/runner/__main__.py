"""Container entrypoint for OpenEvolve jobs on AWS Batch.

Usage:
    python -m evolve_batch.runner                 # env vars / .env
    evolve-batch-run --env-file job.env --log-level DEBUG

Signals:
    SIGTERM / SIGINT → checkpoint, final sync, exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Optional, Sequence

from dotenv import load_dotenv

from .config import RunnerConfig
from .models import ConfigError, Workspace
from .supervisor import Supervisor

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: RunnerConfig, workspace: Optional[Workspace] = None) -> logging.Logger:
    """Console logger plus a file under output/logs/ so the log is synced with results."""
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%SZ")
    formatter.converter = time.gmtime

    logger = logging.getLogger("evolve_batch")
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logger.handlers.clear()

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    if workspace is not None:
        workspace.log_dir.mkdir(parents=True, exist_ok=True)
        fh = TimedRotatingFileHandler(
            workspace.log_dir / "supervisor.log",
            when="midnight",
            backupCount=7,
            utc=True,
        )
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    # boto's own logging is noisy at DEBUG
    for name in ("botocore", "aiobotocore", "boto3", "aioboto3"):
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


async def _run(supervisor: Supervisor) -> int:
    supervisor.install_signal_handlers()
    try:
        return await supervisor.run()
    finally:
        supervisor.remove_signal_handlers()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Supervise an OpenEvolve run on preemptible capacity")
    parser.add_argument("--env-file", help="Load environment variables from this file first")
    parser.add_argument("--log-level", help="Override LOG_LEVEL (DEBUG|INFO|WARNING)")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file, override=True)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level.upper()

    try:
        cfg = RunnerConfig.from_env()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.getLogger("evolve_batch.runner").error("ERROR: %s", exc)
        return exc.exit_code

    workspace = Workspace.for_job(cfg.work_root, cfg.job_id).create()
    setup_logging(cfg, workspace)
    supervisor = Supervisor(cfg, workspace=workspace)
    return asyncio.run(_run(supervisor))


if __name__ == "__main__":
    sys.exit(main())
