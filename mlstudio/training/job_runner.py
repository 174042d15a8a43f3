"""Executes submitted script runs on a compute target."""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional, Dict, List

import mlstudio
from mlstudio.compute.target import resolve_compute_target
from mlstudio.config import settings
from mlstudio.exceptions import (
    ComputeNotFoundError,
    ComputeProvisioningError,
    EnvironmentBuildError,
)
from mlstudio.training.run import ENV_RUN_ID, ENV_WORKSPACE_NAME, ENV_WORKSPACE_PATH
from mlstudio.workspace.models import RunStatus

logger = logging.getLogger(__name__)

# Error codes recorded on failed runs
COMPUTE_ERROR = "ComputeProvisioningError"
ENVIRONMENT_ERROR = "EnvironmentBuildError"
SCRIPT_ERROR = "ScriptExecutionError"
TIMEOUT_ERROR = "RunTimeoutError"
SYSTEM_ERROR = "SystemError"

LOG_TAIL_LINES = 20


class ScriptJobRunner:
    """
    Moves one script run through Queued, Preparing, Running and Finalizing.

    The script executes in a subprocess inside a snapshot of the source
    directory. It finds its run through environment variables, its output
    goes to ``logs/driver_log.txt`` and whatever it writes to ``outputs/`` is
    uploaded as run artifacts. Nothing is retried.
    """

    def __init__(self, run, config):
        self.run = run
        self.config = config
        self.poll_interval = settings.run.poll_interval_seconds

    def start(self) -> threading.Thread:
        """Execute on a daemon thread and return it."""
        thread = threading.Thread(target=self.execute, name=f"run-{self.run.id}", daemon=True)
        thread.start()
        return thread

    def execute(self) -> RunStatus:
        """
        Execute the run synchronously.

        Returns:
            Final run status
        """
        try:
            self._execute()
        except Exception as e:
            logger.exception(f"Run {self.run.id} failed unexpectedly")
            self._fail(SYSTEM_ERROR, f"{type(e).__name__}: {e}")
        return RunStatus(self.run.status)

    def _fail(self, code: str, message: str) -> None:
        logger.error(f"Run {self.run.id} failed ({code}): {message}")
        self.run._set_status(RunStatus.FAILED, error={"code": code, "message": message})

    def _execute(self) -> None:
        run = self.run

        try:
            compute = resolve_compute_target(run.workspace, self.config.compute_target)
        except (ComputeNotFoundError, ComputeProvisioningError) as e:
            self._fail(COMPUTE_ERROR, e.message)
            return

        cluster = compute.cluster
        if not self._acquire_node(cluster):
            return

        workdir: Optional[Path] = None
        try:
            if run.cancel_requested:
                run._set_status(RunStatus.CANCELED)
                return

            run._set_status(RunStatus.PREPARING)
            workdir = Path(tempfile.mkdtemp(prefix="mlstudio_"))
            shutil.copytree(self.config.source_directory, workdir, dirs_exist_ok=True)
            run.workspace.storage.save_artifact_from_file(
                self.config.source_directory, f"runs/{run.id}/snapshot"
            )

            if not (workdir / self.config.script).is_file():
                self._fail(SCRIPT_ERROR, f"Script '{self.config.script}' not found in source directory")
                return

            if self.config.environment is not None:
                try:
                    self.config.environment.build()
                except EnvironmentBuildError as e:
                    self._fail(ENVIRONMENT_ERROR, e.message)
                    return

            run._set_status(RunStatus.RUNNING)
            outcome, exit_code = self._run_process(workdir)

            run._set_status(RunStatus.FINALIZING)
            outputs_dir = workdir / settings.run.outputs_dir
            if outputs_dir.is_dir():
                run.upload_folder(settings.run.outputs_dir, str(outputs_dir))

            if outcome == "canceled":
                run._set_status(RunStatus.CANCELED)
            elif outcome == "timeout":
                self._fail(
                    TIMEOUT_ERROR,
                    f"Run exceeded max_run_duration_seconds={self._max_duration()}"
                )
            elif exit_code != 0:
                self._fail(
                    SCRIPT_ERROR,
                    f"Script exited with code {exit_code}:\n{self._log_tail()}"
                )
            else:
                run._set_status(RunStatus.COMPLETED)
        finally:
            cluster.release_node()
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)

    def _acquire_node(self, cluster) -> bool:
        """Wait for a node, giving up if the run is canceled or the wait times out."""
        timeout = settings.compute.node_acquire_timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        while not cluster.acquire_node(timeout=self.poll_interval):
            if self.run.cancel_requested:
                self.run._set_status(RunStatus.CANCELED)
                return False
            if deadline is not None and time.monotonic() >= deadline:
                self._fail(COMPUTE_ERROR, f"No node available on '{cluster.name}' within {timeout}s")
                return False
        return True

    def _max_duration(self) -> Optional[int]:
        return self.config.max_run_duration_seconds or settings.run.default_max_run_duration_seconds

    def _process_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env[ENV_RUN_ID] = self.run.id
        env[ENV_WORKSPACE_NAME] = self.run.workspace.name
        env[ENV_WORKSPACE_PATH] = str(self.run.workspace.root_path)

        package_root = str(Path(mlstudio.__file__).resolve().parent.parent)
        existing = env.get("PYTHONPATH")
        env["PYTHONPATH"] = package_root if not existing else os.pathsep.join([package_root, existing])

        if self.config.environment is not None:
            env.update(self.config.environment.python.environment_variables)
        return env

    def _log_path(self) -> Path:
        path = self.run.artifact_local_path(f"{settings.run.logs_dir}/driver_log.txt")
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def _log_tail(self) -> str:
        path = self._log_path()
        if not path.exists():
            return ""
        with open(path, 'r', errors="replace") as f:
            lines = f.readlines()
        return "".join(lines[-LOG_TAIL_LINES:])

    def _run_process(self, workdir: Path):
        """
        Run the script until it exits, is canceled or times out.

        Returns:
            Tuple of (outcome, exit code) where outcome is completed, canceled or timeout
        """
        command: List[str] = [settings.run.python_executable, self.config.script]
        command.extend(self.run._record().arguments)
        max_duration = self._max_duration()
        started = time.monotonic()

        logger.info(f"Run {self.run.id} executing: {' '.join(command)}")

        with open(self._log_path(), 'a') as log_file:
            process = subprocess.Popen(
                command,
                cwd=str(workdir),
                env=self._process_env(),
                stdout=log_file,
                stderr=subprocess.STDOUT,
            )
            while True:
                try:
                    exit_code = process.wait(timeout=self.poll_interval)
                    return "completed", exit_code
                except subprocess.TimeoutExpired:
                    pass

                if self.run.cancel_requested:
                    self._stop(process)
                    return "canceled", process.returncode
                if max_duration is not None and time.monotonic() - started > max_duration:
                    self._stop(process)
                    return "timeout", process.returncode

    @staticmethod
    def _stop(process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
