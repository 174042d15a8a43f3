"""Tests for experiments and interactive runs."""

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pytest

from mlstudio.exceptions import RunFailedError, RunNotFoundError, RunStateError, RunTimeoutError, ValidationError
from mlstudio.training.experiment import Experiment
from mlstudio.training.run import ENV_RUN_ID, OfflineRun, Run
from mlstudio.workspace.models import RunStatus, is_valid_transition


@pytest.fixture
def experiment(workspace):
    return Experiment(workspace, "mslearn-diabetes")


class TestStatusTransitions:
    """Test the run lifecycle ordering."""

    def test_forward_transitions_are_valid(self):
        assert is_valid_transition(RunStatus.NOT_STARTED, RunStatus.QUEUED)
        assert is_valid_transition(RunStatus.QUEUED, RunStatus.RUNNING)
        assert is_valid_transition(RunStatus.RUNNING, RunStatus.FAILED)

    def test_backward_and_terminal_transitions_are_invalid(self):
        assert not is_valid_transition(RunStatus.RUNNING, RunStatus.QUEUED)
        assert not is_valid_transition(RunStatus.COMPLETED, RunStatus.RUNNING)
        assert not is_valid_transition(RunStatus.FAILED, RunStatus.COMPLETED)

    def test_set_status_backwards_raises(self, experiment):
        run = experiment.start_logging()

        with pytest.raises(RunStateError):
            run._set_status(RunStatus.QUEUED)

    def test_terminal_status_is_final(self, experiment):
        run = experiment.start_logging()
        run.complete()

        assert run._set_status(RunStatus.FAILED) is False
        assert run.status == "Completed"


class TestExperiment:
    """Test experiment naming and listing."""

    @pytest.mark.parametrize("name", ["", "-leading-dash", "has space", "a" * 300])
    def test_invalid_names(self, workspace, name):
        with pytest.raises(ValidationError):
            Experiment(workspace, name)

    def test_created_lazily(self, experiment, workspace):
        assert not experiment.exists

        experiment.start_logging()

        assert experiment.exists
        assert "mslearn-diabetes" in workspace.experiments

    def test_get_runs_newest_first_without_children(self, experiment):
        first = experiment.start_logging()
        first.child_run("child")
        second = experiment.start_logging()

        assert [r.id for r in experiment.get_runs()] == [second.id, first.id]
        assert len(list(experiment.get_runs(include_children=True))) == 3

    def test_get_runs_filters_by_tag(self, experiment):
        experiment.start_logging(tags={"model": "lr"})
        tagged = experiment.start_logging()
        tagged.tag("model", "tree")

        assert [r.id for r in experiment.get_runs(tags={"model": "tree"})] == [tagged.id]

    def test_submit_rejects_unknown_config(self, experiment):
        with pytest.raises(ValidationError):
            experiment.submit(object())


class TestInteractiveRun:
    """Test logging from an interactive run."""

    def test_start_logging_is_running(self, experiment):
        run = experiment.start_logging(display_name="notebook")

        assert run.status == "Running"
        assert run.type == "interactive"
        assert run.display_name == "notebook"
        assert run.get_details()["start_time"] is not None

    def test_scalar_and_series_metrics(self, experiment):
        run = experiment.start_logging()
        run.log("observations", 768)
        run.log("loss", 0.5)
        run.log("loss", 0.25)
        run.log("auc", np.float64(0.85))

        metrics = run.get_metrics()
        assert metrics["observations"] == 768
        assert metrics["loss"] == [0.5, 0.25]
        assert metrics["auc"] == pytest.approx(0.85)
        assert run.get_metric_series("loss") == [0.5, 0.25]
        assert run.get_metrics("loss") == {"loss": [0.5, 0.25]}

    def test_list_row_and_table_metrics(self, experiment):
        run = experiment.start_logging()
        run.log_list("pregnancy categories", [0, 1, 2])
        run.log_row("stats", mean=1.5, std=0.5)
        run.log_row("stats", mean=2.5, std=1.0)
        run.log_table("confusion", {"actual": [0, 1], "predicted": [0, 0]})

        metrics = run.get_metrics()
        assert metrics["pregnancy categories"] == [0, 1, 2]
        assert metrics["stats"] == {"mean": [1.5, 2.5], "std": [0.5, 1.0]}
        assert metrics["confusion"]["predicted"] == [0, 0]

    def test_table_columns_must_match(self, experiment):
        run = experiment.start_logging()

        with pytest.raises(ValidationError):
            run.log_table("bad", {"a": [1, 2], "b": [1]})

    def test_invalid_metric_value(self, experiment):
        run = experiment.start_logging()

        with pytest.raises(ValidationError):
            run.log("bad", {"not": "scalar"})

    def test_log_image_from_plot(self, experiment):
        run = experiment.start_logging()
        fig = plt.figure()
        plt.plot([0, 1], [1, 0])

        run.log_image("roc", plot=fig)
        plt.close(fig)

        assert run.get_metrics()["roc"] == "images/roc.png"
        assert "images/roc.png" in run.get_file_names()

    def test_log_image_needs_exactly_one_source(self, experiment):
        run = experiment.start_logging()

        with pytest.raises(ValidationError):
            run.log_image("roc")

    def test_tags_and_properties(self, experiment):
        run = experiment.start_logging(tags={"stage": "dev"})
        run.tag("model", "lr")
        run.set_tags({"stage": "prod"})
        run.add_properties({"algorithm": "logistic"})

        assert run.get_tags() == {"stage": "prod", "model": "lr"}
        assert run.get_properties() == {"algorithm": "logistic"}

    def test_properties_are_immutable(self, experiment):
        run = experiment.start_logging()
        run.add_properties({"algorithm": "logistic"})
        run.add_properties({"algorithm": "logistic"})

        with pytest.raises(RunStateError):
            run.add_properties({"algorithm": "tree"})

    def test_upload_and_download_files(self, experiment, tmp_path):
        run = experiment.start_logging()
        source = tmp_path / "notes.txt"
        source.write_text("hello")
        folder = tmp_path / "outputs"
        folder.mkdir()
        (folder / "model.pkl").write_bytes(b"model")

        run.upload_file("notes.txt", str(source))
        run.upload_folder("outputs", str(folder))

        assert set(run.get_file_names()) == {"notes.txt", "outputs/model.pkl"}
        target = run.download_file("outputs/model.pkl", str(tmp_path / "downloaded.pkl"))
        with open(target, "rb") as f:
            assert f.read() == b"model"

    def test_download_missing_file(self, experiment, tmp_path):
        run = experiment.start_logging()

        with pytest.raises(FileNotFoundError):
            run.download_file("nope.txt", str(tmp_path / "nope.txt"))

    def test_artifact_names_cannot_escape_run(self, experiment, tmp_path):
        run = experiment.start_logging()
        source = tmp_path / "x.txt"
        source.write_text("x")

        with pytest.raises(ValidationError):
            run.upload_file("../escape.txt", str(source))

    def test_context_manager_completes_or_fails(self, experiment):
        with experiment.start_logging() as run:
            run.log("a", 1)
        assert run.status == "Completed"

        with pytest.raises(ValueError):
            with experiment.start_logging() as failing:
                raise ValueError("bad data")
        assert failing.status == "Failed"
        assert failing.get_details()["error"]["code"] == "ValueError"

    def test_child_runs(self, experiment):
        parent = experiment.start_logging()
        child = parent.child_run("fold-1")
        child.complete()

        assert [c.id for c in parent.get_children()] == [child.id]
        assert child.parent == parent

    def test_cancel_interactive_run(self, experiment):
        run = experiment.start_logging()

        run.cancel()

        assert run.status == "Canceled"

    def test_get_run_by_id(self, experiment, workspace):
        run = experiment.start_logging()

        assert workspace.get_run(run.id) == run
        with pytest.raises(RunNotFoundError):
            Run.get(workspace, "unknown")

    def test_wait_for_failed_run_raises(self, experiment):
        run = experiment.start_logging()
        run.fail("bad input")

        with pytest.raises(RunFailedError):
            run.wait_for_completion()
        assert run.wait_for_completion(raise_on_error=False)["status"] == "Failed"

    def test_wait_times_out(self, experiment):
        run = experiment.start_logging()

        with pytest.raises(RunTimeoutError):
            run.wait_for_completion(timeout=0.1)

    def test_register_model_from_run(self, experiment, tmp_path):
        run = experiment.start_logging()
        model_file = tmp_path / "model.pkl"
        model_file.write_bytes(b"weights")
        run.upload_file("outputs/model.pkl", str(model_file))

        model = run.register_model("diabetes_model", "outputs/model.pkl", tags={"Training context": "Inline"})

        assert model.version == 1
        assert model.run_id == run.id
        assert model.experiment_name == "mslearn-diabetes"

    def test_register_missing_artifact(self, experiment):
        run = experiment.start_logging()

        with pytest.raises(FileNotFoundError):
            run.register_model("m", "outputs/none.pkl")


class TestRunContext:
    """Test Run.get_context outside a submitted run."""

    def test_offline_run(self, monkeypatch):
        monkeypatch.delenv(ENV_RUN_ID, raising=False)

        run = Run.get_context()
        run.log("accuracy", 0.9)
        run.log("accuracy", 0.95)
        run.tag("k", "v")

        assert isinstance(run, OfflineRun)
        assert run.get_metrics() == {"accuracy": [0.9, 0.95]}
        assert run.get_tags() == {"k": "v"}
        assert run.input_datasets == {}

    def test_offline_not_allowed(self, monkeypatch):
        monkeypatch.delenv(ENV_RUN_ID, raising=False)

        with pytest.raises(RunStateError):
            Run.get_context(allow_offline=False)
