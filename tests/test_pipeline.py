"""Tests for pipelines: validation, execution, reuse and publishing."""

import pytest

from mlstudio.exceptions import PipelineNotFoundError, PipelineRunError, PipelineValidationError
from mlstudio.pipelines import (
    Pipeline,
    PipelineData,
    PipelineParameter,
    PipelineRun,
    PublishedPipeline,
    PythonScriptStep,
    StepRun,
)
from mlstudio.training.experiment import Experiment

WAIT = 180


@pytest.fixture
def steps_dir(tmp_path, write_script):
    """Data preparation and training scripts connected through a folder."""
    source = tmp_path / "pipeline_steps"
    write_script(source, "prep.py", """
        import argparse
        import os

        from mlstudio.training.run import Run

        parser = argparse.ArgumentParser()
        parser.add_argument("--out")
        parser.add_argument("--scale", type=float, default=1.0)
        args = parser.parse_args()

        os.makedirs(args.out, exist_ok=True)
        with open(os.path.join(args.out, "value.txt"), "w") as f:
            f.write(str(2.0 * args.scale))
        Run.get_context().log("scale", args.scale)
    """)
    write_script(source, "train.py", """
        import argparse
        import os

        from mlstudio.training.run import Run

        parser = argparse.ArgumentParser()
        parser.add_argument("--in")
        args = parser.parse_args()

        with open(os.path.join(getattr(args, "in"), "value.txt")) as f:
            Run.get_context().log("value", float(f.read()))
    """)
    write_script(source, "fail.py", """
        raise SystemExit("bad data")
    """)
    write_script(source, "noop.py", """
        print("nothing to do")
    """)
    return source


@pytest.fixture
def prep_train(workspace, steps_dir):
    """Pipeline with a parameterized preparation step feeding a training step."""
    prepped = PipelineData("prepped_data")
    scale = PipelineParameter("scale", default_value=1.0)
    prep = PythonScriptStep(
        "prep.py",
        name="prep",
        source_directory=str(steps_dir),
        arguments=["--out", prepped, "--scale", scale],
        outputs=[prepped],
    )
    train = PythonScriptStep(
        "train.py",
        name="train",
        source_directory=str(steps_dir),
        arguments=["--in", prepped],
        inputs=[prepped],
    )
    # listed out of order on purpose
    return Pipeline(workspace, steps=[train, prep], description="prep and train")


def step_metric(run, step_name, metric):
    step, = run.find_step_run(step_name)
    return step.get_metrics()[metric]


class TestPipelineValidation:
    """Test graph validation."""

    def test_order_follows_data(self, prep_train):
        assert [s.name for s in prep_train.validate()] == ["prep", "train"]
        assert prep_train.parameters == {"scale": 1.0}

    def test_empty_pipeline(self, workspace):
        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, []).validate()

    def test_duplicate_step_names(self, workspace, steps_dir):
        steps = [PythonScriptStep("noop.py", name="a", source_directory=str(steps_dir)) for _ in range(2)]

        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, steps).validate()

    def test_data_without_producer(self, workspace, steps_dir):
        orphan = PipelineData("orphan")
        step = PythonScriptStep("train.py", name="train", source_directory=str(steps_dir),
                                arguments=["--in", orphan], inputs=[orphan])

        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, [step]).validate()

    def test_data_with_two_producers(self, workspace, steps_dir):
        data = PipelineData("shared")
        steps = [
            PythonScriptStep("noop.py", name=name, source_directory=str(steps_dir), outputs=[data])
            for name in ("a", "b")
        ]

        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, steps).validate()

    def test_undeclared_data_argument(self, workspace, steps_dir):
        data = PipelineData("undeclared")
        step = PythonScriptStep("prep.py", name="prep", source_directory=str(steps_dir), arguments=["--out", data])

        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, [step]).validate()

    def test_cycle(self, workspace, steps_dir):
        a = PythonScriptStep("noop.py", name="a", source_directory=str(steps_dir))
        b = PythonScriptStep("noop.py", name="b", source_directory=str(steps_dir))
        a.run_after(b)
        b.run_after(a)

        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, [a, b]).validate()

    def test_conflicting_parameter_defaults(self, workspace, steps_dir):
        steps = [
            PythonScriptStep("noop.py", name=name, source_directory=str(steps_dir),
                             arguments=["--x", PipelineParameter("x", default)])
            for name, default in (("a", 1), ("b", 2))
        ]

        with pytest.raises(PipelineValidationError):
            Pipeline(workspace, steps).validate()

    def test_invalid_names_and_defaults(self):
        with pytest.raises(PipelineValidationError):
            PipelineData("has space")
        with pytest.raises(PipelineValidationError):
            PipelineParameter("flag", default_value=True)

    def test_unknown_submitted_parameter(self, prep_train):
        with pytest.raises(PipelineValidationError):
            prep_train.resolve_parameters({"learning_rate": 0.1})


class TestPipelineExecution:
    """Test running pipelines."""

    def test_data_flows_between_steps(self, workspace, prep_train):
        run = prep_train.submit("mslearn-diabetes-pipeline", pipeline_parameters={"scale": 3})
        details = run.wait_for_completion(timeout=WAIT)

        assert isinstance(run, PipelineRun)
        assert details["status"] == "Completed"
        assert [s.display_name for s in run.get_steps()] == ["prep", "train"]
        assert [s.type for s in run.get_steps()] == ["step", "step"]
        assert step_metric(run, "train", "value") == 6.0
        assert run.pipeline_parameters == {"scale": 3}

        prep, = run.find_step_run("prep")
        assert isinstance(prep, StepRun)
        assert (prep.get_output_data("prepped_data") / "value.txt").read_text() == "6.0"
        with pytest.raises(FileNotFoundError):
            prep.get_output_data("missing")

    def test_identical_steps_are_reused(self, workspace, prep_train):
        first = prep_train.submit("reuse")
        first.wait_for_completion(timeout=WAIT)

        second = prep_train.submit("reuse")
        second.wait_for_completion(timeout=WAIT)

        first_ids = [s.id for s in first.get_steps()]
        assert [s.get_properties()["reused_from"] for s in second.get_steps()] == first_ids
        first_prep, = first.find_step_run("prep")
        second_prep, = second.find_step_run("prep")
        assert second_prep.reused_from == first_prep.id
        assert second_prep.get_output_data("prepped_data") == first_prep.get_output_data("prepped_data")

    def test_changed_parameter_reruns_downstream(self, workspace, prep_train):
        prep_train.submit("reuse", pipeline_parameters={"scale": 1.0}).wait_for_completion(timeout=WAIT)

        run = prep_train.submit("reuse", pipeline_parameters={"scale": 5.0})
        run.wait_for_completion(timeout=WAIT)

        assert all("reused_from" not in s.get_properties() for s in run.get_steps())
        assert step_metric(run, "train", "value") == 10.0

    def test_regenerate_outputs_disables_reuse(self, workspace, prep_train):
        prep_train.submit("reuse").wait_for_completion(timeout=WAIT)

        run = prep_train.submit("reuse", regenerate_outputs=True)
        run.wait_for_completion(timeout=WAIT)

        assert all("reused_from" not in s.get_properties() for s in run.get_steps())

    def test_failed_step_cancels_downstream_only(self, workspace, steps_dir):
        data = PipelineData("broken")
        failing = PythonScriptStep("fail.py", name="failing", source_directory=str(steps_dir), outputs=[data])
        downstream = PythonScriptStep("train.py", name="downstream", source_directory=str(steps_dir),
                                      arguments=["--in", data], inputs=[data])
        independent = PythonScriptStep("noop.py", name="independent", source_directory=str(steps_dir))
        after = PythonScriptStep("noop.py", name="after", source_directory=str(steps_dir))
        after.run_after(downstream)
        pipeline = Pipeline(workspace, [failing, downstream, independent, after])

        run = Experiment(workspace, "broken-pipeline").submit(pipeline)
        details = run.wait_for_completion(timeout=WAIT, raise_on_error=False)

        statuses = {s.display_name: s.status for s in run.get_steps()}
        assert statuses == {
            "failing": "Failed",
            "downstream": "Canceled",
            "after": "Canceled",
            "independent": "Completed",
        }
        assert details["status"] == "Failed"
        assert details["error"]["code"] == "StepFailed"
        assert "failing" in details["error"]["message"]


class TestPublishedPipeline:
    """Test publishing and submitting by id."""

    def test_publish_and_submit(self, workspace, prep_train):
        published = prep_train.publish("prep-train", version="1.0")

        fetched = PublishedPipeline.get(workspace, published.id)
        assert fetched.name == "prep-train"
        assert fetched.description == "prep and train"
        assert fetched.parameters == {"scale": 1.0}
        assert [s["name"] for s in fetched.to_dict()["graph"]["steps"]] == ["prep", "train"]

        run = fetched.submit(workspace, "published-runs", pipeline_parameters={"scale": 2.0})
        run.wait_for_completion(timeout=WAIT)

        assert run.published_pipeline_id == published.id
        assert step_metric(run, "train", "value") == 4.0

    def test_published_steps_use_snapshot(self, workspace, prep_train, steps_dir):
        published = prep_train.publish("snapshot")
        (steps_dir / "prep.py").write_text("raise SystemExit('edited after publishing')\n")

        run = published.submit(workspace, "published-runs")
        details = run.wait_for_completion(timeout=WAIT)

        assert details["status"] == "Completed"

    def test_disable_and_enable(self, workspace, prep_train):
        published = prep_train.publish("toggle")

        published.disable()

        assert published.status == "Disabled"
        assert PublishedPipeline.list(workspace) == []
        assert [p.id for p in PublishedPipeline.list(workspace, active_only=False)] == [published.id]
        with pytest.raises(PipelineRunError):
            published.submit(workspace, "published-runs")

        published.enable()
        assert [p.id for p in PublishedPipeline.list(workspace)] == [published.id]

    def test_unknown_pipeline(self, workspace):
        with pytest.raises(PipelineNotFoundError):
            PublishedPipeline.get(workspace, "missing")
