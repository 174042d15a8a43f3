"""Tests for submitting script runs and executing them on compute targets."""

import time

import pandas as pd
import pytest

from mlstudio.compute.target import AmlCompute, ComputeTarget
from mlstudio.data.dataset import Dataset
from mlstudio.exceptions import RunFailedError, ValidationError
from mlstudio.training.environment import Environment
from mlstudio.training.experiment import Experiment
from mlstudio.training.job_runner import ScriptJobRunner
from mlstudio.training.script_run_config import ScriptRunConfig
from mlstudio.workspace.models import RunStatus

WAIT = 120


def wait_for_status(run, status, timeout=WAIT):
    deadline = time.monotonic() + timeout
    while run.status != status and time.monotonic() < deadline:
        time.sleep(0.05)
    assert run.status == status


@pytest.fixture
def experiment(workspace):
    return Experiment(workspace, "train-diabetes")


class TestScriptRunConfig:
    """Test configuration validation and argument resolution."""

    def test_missing_source_directory(self, tmp_path):
        with pytest.raises(ValidationError):
            ScriptRunConfig(source_directory=str(tmp_path / "missing"), script="train.py")

    def test_non_positive_duration(self, train_dir):
        with pytest.raises(ValidationError):
            ScriptRunConfig(source_directory=str(train_dir), script="train.py", max_run_duration_seconds=0)

    def test_resolve_arguments(self, workspace, train_dir):
        data = Dataset.Tabular.from_pandas_dataframe(pd.DataFrame({"a": [1]})).register(workspace, "tiny")
        config = ScriptRunConfig(
            source_directory=str(train_dir),
            script="train.py",
            arguments=["--reg", 0.1, "--input", data.as_named_input("training_data"), True],
        )

        arguments, inputs = config.resolve_arguments()

        assert arguments == ["--reg", "0.1", "--input", "tiny:1", "True"]
        assert inputs == {"training_data": "tiny:1"}

    def test_unsupported_argument(self, train_dir):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py", arguments=[object()])

        with pytest.raises(ValidationError):
            config.resolve_arguments()

    def test_compute_target_name(self, train_dir):
        assert ScriptRunConfig(str(train_dir), "train.py").compute_target_name == "local"
        assert ScriptRunConfig(str(train_dir), "train.py", compute_target="aml").compute_target_name == "aml"


class TestScriptSubmission:
    """Test end-to-end execution of submitted scripts."""

    def test_successful_run(self, experiment, train_dir):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py", arguments=["--reg", 0.1])

        run = experiment.submit(config, tags={"purpose": "test"})
        details = run.wait_for_completion(timeout=WAIT)

        assert details["status"] == "Completed"
        assert details["arguments"] == ["--reg", "0.1"]
        assert run.get_tags() == {"purpose": "test"}
        metrics = run.get_metrics()
        assert metrics["regularization"] == 0.1
        assert metrics["accuracy"] == pytest.approx(0.99)
        assert "outputs/model.txt" in run.get_file_names()
        assert run.artifact_local_path("snapshot/train.py").exists()
        assert "training with reg 0.1" in run.artifact_local_path("logs/driver_log.txt").read_text()

    def test_script_error_fails_run(self, experiment, train_dir):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py", arguments=["--fail"])

        run = experiment.submit(config)

        with pytest.raises(RunFailedError):
            run.wait_for_completion(timeout=WAIT)
        error = run.get_details()["error"]
        assert error["code"] == "ScriptExecutionError"
        assert "exited with code 3" in error["message"]
        # outputs written before the failure are still uploaded
        assert "outputs/model.txt" in run.get_file_names()

    def test_missing_script(self, experiment, train_dir):
        run = experiment.submit(ScriptRunConfig(source_directory=str(train_dir), script="nope.py"))

        details = run.wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["error"]["code"] == "ScriptExecutionError"

    def test_unsatisfied_environment(self, experiment, train_dir):
        env = Environment("broken-env")
        env.python.pip_packages = ["definitely-not-installed-package-xyz"]
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py", environment=env)

        details = experiment.submit(config).wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["status"] == "Failed"
        assert details["error"]["code"] == "EnvironmentBuildError"

    def test_unknown_compute_target(self, experiment, train_dir):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py", compute_target="missing")

        details = experiment.submit(config).wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["error"]["code"] == "ComputeProvisioningError"

    def test_timeout(self, experiment, tmp_path, write_script):
        source = tmp_path / "slow"
        write_script(source, "slow.py", """
            import time
            time.sleep(60)
        """)
        config = ScriptRunConfig(source_directory=str(source), script="slow.py", max_run_duration_seconds=1)

        details = experiment.submit(config).wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["status"] == "Failed"
        assert details["error"]["code"] == "RunTimeoutError"

    def test_cancel_running_script(self, experiment, tmp_path, write_script):
        source = tmp_path / "slow"
        write_script(source, "slow.py", """
            import time
            time.sleep(60)
        """)
        run = experiment.submit(ScriptRunConfig(source_directory=str(source), script="slow.py"))
        wait_for_status(run, "Running")

        run.cancel()
        details = run.wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["status"] == "Canceled"

    def test_dataset_input_is_available_in_script(self, workspace, experiment, tmp_path, write_script):
        data = Dataset.Tabular.from_pandas_dataframe(pd.DataFrame({"a": [1, 2, 3]})).register(workspace, "tiny")
        source = tmp_path / "reader"
        write_script(source, "read.py", """
            from mlstudio.training.run import Run

            run = Run.get_context()
            frame = run.input_datasets["training_data"].to_pandas_dataframe()
            run.log("rows", len(frame))
        """)
        config = ScriptRunConfig(
            source_directory=str(source),
            script="read.py",
            arguments=["--input-data", data.as_named_input("training_data")],
        )

        run = experiment.submit(config)
        run.wait_for_completion(timeout=WAIT)

        assert run.get_metrics()["rows"] == 3
        assert run.get_details()["input_datasets"] == {"training_data": "tiny:1"}

    def test_runs_are_serialized_by_max_nodes(self, workspace, experiment, tmp_path, write_script):
        ComputeTarget.create(workspace, "single", AmlCompute.provisioning_configuration(max_nodes=1))
        source = tmp_path / "timed"
        write_script(source, "timed.py", """
            import time
            from mlstudio.training.run import Run

            run = Run.get_context()
            run.log("start", time.time())
            time.sleep(0.5)
            run.log("end", time.time())
        """)

        runs = [
            experiment.submit(ScriptRunConfig(str(source), "timed.py", compute_target="single"))
            for _ in range(2)
        ]
        for run in runs:
            run.wait_for_completion(timeout=WAIT)

        first, second = sorted((r.get_metrics() for r in runs), key=lambda m: m["start"])
        assert second["start"] >= first["end"]


class TestScriptJobRunner:
    """Test the runner directly."""

    def test_execute_synchronously(self, experiment, train_dir):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py")
        run = config._create_run(experiment)

        assert run.status == "Queued"
        assert ScriptJobRunner(run, config).execute() == RunStatus.COMPLETED

    def test_cancel_while_queued(self, experiment, train_dir):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py")
        run = config._create_run(experiment)
        run.cancel()

        assert ScriptJobRunner(run, config).execute() == RunStatus.CANCELED

    def test_unexpected_error_fails_run(self, experiment, train_dir, mocker):
        config = ScriptRunConfig(source_directory=str(train_dir), script="train.py")
        run = config._create_run(experiment)
        mocker.patch.object(ScriptJobRunner, "_run_process", side_effect=OSError("disk full"))

        assert ScriptJobRunner(run, config).execute() == RunStatus.FAILED
        assert run.get_details()["error"]["code"] == "SystemError"
