"""Worker process launch and control."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Optional

from .config import RunnerConfig
from .models import CheckpointRef, StagedInputs, Workspace

logger = logging.getLogger("evolve_batch.runner.worker")


def build_worker_argv(
    config: RunnerConfig,
    workspace: Workspace,
    inputs: StagedInputs,
    resume: Optional[CheckpointRef] = None,
) -> list[str]:
    argv = [*config.worker_command, str(inputs.program), str(inputs.evaluator)]
    if inputs.config is not None:
        argv += ["--config", str(inputs.config)]
    argv += [
        "--iterations", str(config.iterations),
        "--log-level", config.log_level,
        "--output", str(workspace.output_dir),
    ]
    if resume is not None:
        argv += ["--checkpoint", str(resume.path)]
    return argv


def build_worker_env(config: RunnerConfig) -> dict[str, str]:
    env = dict(os.environ)
    env["GEMINI_API_KEY"] = config.api_key
    # OpenEvolve's openai client reads OPENAI_API_KEY by default
    env["OPENAI_API_KEY"] = config.api_key
    return env


class WorkerHandle:
    """Wraps the worker subprocess. The worker leads its own process group."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> int:
        return await self._process.wait()

    async def wait_for(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds. Returns True if the worker has exited."""
        try:
            await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def terminate(self) -> None:
        """SIGTERM to the worker only; it is responsible for its own children."""
        try:
            self._process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        """SIGKILL the whole process group so no pool workers outlive the run."""
        try:
            os.killpg(self._process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                self._process.kill()
            except ProcessLookupError:
                pass


async def spawn_worker(argv: list[str], env: Optional[dict[str, str]] = None) -> WorkerHandle:
    """Start the worker without waiting for it. stdout/stderr are inherited."""
    process = await asyncio.create_subprocess_exec(*argv, env=env, start_new_session=True)
    logger.info("Worker started (pid %d): %s", process.pid, " ".join(argv))
    return WorkerHandle(process)
