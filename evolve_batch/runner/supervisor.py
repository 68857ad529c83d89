"""Process supervisor — runs one OpenEvolve job on preemptible capacity.

State machine::

    STARTING → STAGING_INPUT → {RESUMING | FRESH} → RUNNING
             → {COMPLETING | INTERRUPTING} → SYNCING → EXITED

STAGING_INPUT may go straight to EXITED on a fatal configuration error, in
which case no worker is started and nothing is synced.

SIGTERM (Spot two-minute warning) and SIGINT both trigger the shutdown
protocol: SIGTERM to the worker, up to ``grace_period_s`` for it to write a
checkpoint and exit, then SIGKILL. The exit status on that path is fixed
(``interrupt_exit_code`` / ``cancel_exit_code``) because the retry decision
belongs to the scheduler, which sees why the container stopped.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Any, Awaitable, Optional

from .config import RunnerConfig
from .finalizer import OutputFinalizer, utc_now
from .models import (
    CheckpointRef,
    RunOutcome,
    ShutdownCause,
    StagedInputs,
    SupervisorError,
    SupervisorState,
    Workspace,
)
from .resolver import CheckpointResolver
from .s3_sync import S3Sync
from .staging import InputStager
from .synchronizer import BackgroundSynchronizer
from .worker import WorkerHandle, build_worker_argv, build_worker_env, spawn_worker

logger = logging.getLogger("evolve_batch.runner.supervisor")

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)
EXIT_SPAWN_FAILED = 127

# Signals arriving in any other state are logged and ignored.
_ACCEPTS_SHUTDOWN = {
    SupervisorState.STARTING,
    SupervisorState.STAGING_INPUT,
    SupervisorState.RESUMING,
    SupervisorState.FRESH,
    SupervisorState.RUNNING,
}


def exit_status(returncode: int) -> int:
    """Shell convention for a worker killed by a signal: 128 + signum."""
    return returncode if returncode >= 0 else 128 - returncode


class Supervisor:
    """Owns the worker handle, signal state and shutdown protocol for one run."""

    def __init__(
        self,
        config: RunnerConfig,
        s3: Optional[S3Sync] = None,
        workspace: Optional[Workspace] = None,
    ) -> None:
        self._config = config
        self._attempt = config.job_attempt
        self._workspace = workspace or Workspace.for_job(config.work_root, config.job_id)
        self._s3 = s3 or S3Sync(config)
        self.stager = InputStager(config, self._workspace, self._s3)
        self.resolver = CheckpointResolver(config, self._workspace, self._s3)
        self.synchronizer = BackgroundSynchronizer(config, self._workspace, self._s3)
        self.finalizer = OutputFinalizer(config, self._workspace, self.synchronizer)

        self.state = SupervisorState.STARTING
        self.shutdown_cause: Optional[ShutdownCause] = None
        self.force_killed = False
        self._handle: Optional[WorkerHandle] = None
        self._shutdown = asyncio.Event()
        self._interrupting = False

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def handle(self) -> Optional[WorkerHandle]:
        return self._handle

    # -- state & signals -------------------------------------------------------

    def _transition(self, new: SupervisorState, details: str = "") -> None:
        old, self.state = self.state, new
        logger.info("State %s → %s%s", old.value, new.value, f" | {details}" if details else "")

    def request_shutdown(self, signum: int) -> None:
        """Signal entry point. Only the first accepted signal has any effect."""
        name = signal.Signals(signum).name
        if self.shutdown_cause is not None or self.state not in _ACCEPTS_SHUTDOWN:
            logger.warning("%s received in state %s, ignoring", name, self.state.value)
            return
        self.shutdown_cause = ShutdownCause.from_signal(signum)
        logger.warning("%s received (%s) — checkpointing and syncing to S3...", name, self.shutdown_cause.value)
        self._shutdown.set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig)

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.remove_signal_handler(sig)

    async def _until_shutdown(self, aw: Awaitable[Any]) -> tuple[bool, Any]:
        """Await *aw* unless shutdown is requested first, in which case cancel it.

        Returns ``(True, result)`` on completion, ``(False, None)`` if cancelled.
        """
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return True, task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False, None

    # -- worker lifecycle -------------------------------------------------------

    async def start(self, inputs: StagedInputs, resume: Optional[CheckpointRef] = None) -> WorkerHandle:
        """Spawn the worker and return immediately."""
        logger.info("Starting evolution: iterations=%d, log_level=%s%s",
                    self._config.iterations, self._config.log_level,
                    f", resume={resume.name}" if resume else "")
        argv = build_worker_argv(self._config, self._workspace, inputs, resume)
        self._handle = await spawn_worker(argv, build_worker_env(self._config))
        return self._handle

    async def await_completion(self, handle: WorkerHandle) -> int:
        """Block until the worker exits on its own; return its exit status."""
        return await handle.wait()

    async def interrupt(self, handle: Optional[WorkerHandle]) -> None:
        """Shutdown protocol: SIGTERM, poll within the grace budget, then SIGKILL."""
        if self._interrupting:
            logger.debug("Shutdown protocol already ran")
            return
        self._interrupting = True

        if handle is None or not handle.is_running:
            logger.info("No running worker to stop")
            return

        grace = self._config.grace_period_s
        poll = self._config.grace_poll_interval_s
        handle.terminate()
        deadline = time.monotonic() + grace
        logger.info("Sent SIGTERM to worker %d; waiting up to %gs for a checkpoint", handle.pid, grace)

        while handle.is_running:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await handle.wait_for(min(poll, remaining))

        if handle.is_running:
            logger.warning("Worker %d still alive after %gs — force-killing", handle.pid, grace)
            handle.kill()
            self.force_killed = True
        code = await handle.wait()
        logger.info("Worker exited with code %d%s", code, " (killed)" if self.force_killed else "")

    # -- main flow -------------------------------------------------------------

    def _shutdown_exit_code(self) -> int:
        if self.shutdown_cause is ShutdownCause.CANCEL:
            return self._config.cancel_exit_code
        return self._config.interrupt_exit_code

    async def run(self) -> int:
        """Run the job end to end and return the process exit status."""
        started_at = utc_now()
        logger.info("=== OpenEvolve Batch job starting ===")
        logger.info("Job ID: %s  Attempt: %d", self._attempt.job_id, self._attempt.attempt_number)
        logger.info("Input:  %s", self._config.s3_input_prefix)
        logger.info("Output: %s", self._config.s3_output_prefix)
        self._workspace.create()

        resume: Optional[CheckpointRef] = None
        self._transition(SupervisorState.STAGING_INPUT)
        try:
            staged, inputs = await self._until_shutdown(self.stager.stage())
            if staged:
                self._transition(SupervisorState.RESUMING if self._attempt.is_retry else SupervisorState.FRESH)
                _, resume = await self._until_shutdown(self.resolver.resolve(self._attempt))
        except SupervisorError as exc:
            logger.error("ERROR: %s", exc)
            self._transition(SupervisorState.EXITED, f"fatal, exit code {exc.exit_code}")
            return exc.exit_code

        worker_code: Optional[int] = None
        cause: Optional[ShutdownCause] = None
        exit_code: int
        if self._shutdown.is_set():
            self._transition(SupervisorState.INTERRUPTING, "before worker start")
            await self.interrupt(None)
            exit_code = self._shutdown_exit_code()
            cause = self.shutdown_cause
        else:
            try:
                handle = await self.start(inputs, resume)
            except OSError as exc:
                logger.error("Could not start worker %s: %s", self._config.worker_command, exc)
                self._transition(SupervisorState.COMPLETING, "spawn failed")
                exit_code = EXIT_SPAWN_FAILED
            else:
                self.synchronizer.start()
                self._transition(SupervisorState.RUNNING, f"worker pid {handle.pid}")
                finished, worker_code = await self._until_shutdown(self.await_completion(handle))
                if finished:
                    # Leave RUNNING first: signals from here on are ignored.
                    self._transition(SupervisorState.COMPLETING, f"worker exit code {worker_code}")
                    await self.synchronizer.stop()
                    exit_code = exit_status(worker_code)
                else:
                    self._transition(SupervisorState.INTERRUPTING, self.shutdown_cause.value)
                    await self.synchronizer.stop()
                    await self.interrupt(handle)
                    worker_code = handle.returncode
                    exit_code = self._shutdown_exit_code()
                    cause = self.shutdown_cause

        if cause is ShutdownCause.CANCEL:
            logger.warning("Run was cancelled interactively (SIGINT), not preempted; exiting with %d", exit_code)

        self._transition(SupervisorState.SYNCING)
        await self.finalizer.finalize(RunOutcome(
            job=self._attempt,
            exit_code=exit_code,
            worker_exit_code=worker_code,
            resumed_from=str(resume.path) if resume else None,
            shutdown_cause=cause,
            force_killed=self.force_killed,
            started_at=started_at,
        ))
        self._transition(SupervisorState.EXITED, f"exit code {exit_code}")
        return exit_code
