"""Input staging — pull the job's input prefix into the local workspace."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml

from .config import RunnerConfig
from .models import ConfigError, InputStagingError, StagedInputs, StagingTransferError, SyncError, Workspace
from .s3_sync import S3Sync

logger = logging.getLogger("evolve_batch.runner.staging")

INITIAL_PROGRAM = "initial_program.py"
EVALUATOR = "evaluator.py"


class InputStager:
    """Downloads the input prefix and checks the required files are present."""

    def __init__(self, config: RunnerConfig, workspace: Workspace, s3: S3Sync) -> None:
        self._config = config
        self._workspace = workspace
        self._s3 = s3

    async def stage(self) -> StagedInputs:
        """Sync inputs down. Raises InputStagingError if a required file is missing."""
        input_dir = self._workspace.input_dir
        logger.info("Downloading inputs from %s", self._config.s3_input_prefix)
        try:
            result = await self._s3.sync_down(self._config.s3_input_prefix, input_dir)
        except ValueError as exc:
            raise ConfigError(f"S3_INPUT_PREFIX: {exc}") from exc
        except SyncError as exc:
            raise StagingTransferError(str(exc)) from exc
        logger.info("Inputs staged: %d downloaded, %d already current", result.transferred, result.skipped)

        program = input_dir / INITIAL_PROGRAM
        evaluator = input_dir / EVALUATOR
        for required in (program, evaluator):
            if not required.is_file():
                raise InputStagingError(f"{required.name} not found in input prefix {self._config.s3_input_prefix}")

        return StagedInputs(program=program, evaluator=evaluator, config=self._find_config(input_dir))

    def _find_config(self, input_dir: Path) -> Optional[Path]:
        path = input_dir / self._config.config_file
        if not path.is_file():
            logger.info("No config file found — using OpenEvolve defaults.")
            return None
        try:
            data = yaml.safe_load(path.read_text())
        except (yaml.YAMLError, UnicodeDecodeError, OSError) as exc:
            logger.warning("Config %s could not be read as YAML (%s); passing it through unchanged", path, exc)
        else:
            if not isinstance(data, dict):
                logger.warning("Config %s does not contain a mapping; passing it through unchanged", path)
            elif "max_iterations" in data:
                logger.info("Config sets max_iterations=%s; ITERATIONS=%d is passed on the command line",
                            data["max_iterations"], self._config.iterations)
        logger.info("Using config: %s", path)
        return path
