"""Tests for hyperparameter sweeps."""

import time

import pytest

from mlstudio.compute.target import AmlCompute, ComputeTarget
from mlstudio.exceptions import SweepConfigurationError
from mlstudio.training.experiment import Experiment
from mlstudio.training.run import Run
from mlstudio.training.script_run_config import ScriptRunConfig
from mlstudio.tuning import (
    BanditPolicy,
    BayesianParameterSampling,
    GridParameterSampling,
    HyperDriveConfig,
    HyperDriveRun,
    MedianStoppingPolicy,
    PrimaryMetricGoal,
    RandomParameterSampling,
    TruncationSelectionPolicy,
    choice,
    uniform,
)
from mlstudio.tuning.sampling import _BayesianSampler
from mlstudio.tuning.sweep import parameter_arguments

WAIT = 180


@pytest.fixture
def experiment(workspace):
    return Experiment(workspace, "mslearn-diabetes-hyperdrive")


@pytest.fixture
def script_config(train_dir):
    return ScriptRunConfig(source_directory=str(train_dir), script="train.py")


def make_config(run_config, space, **kwargs):
    kwargs.setdefault("primary_metric_name", "accuracy")
    kwargs.setdefault("primary_metric_goal", PrimaryMetricGoal.MAXIMIZE)
    kwargs.setdefault("max_total_runs", 10)
    return HyperDriveConfig(
        run_config=run_config,
        hyperparameter_sampling=GridParameterSampling(space),
        **kwargs
    )


def test_parameter_arguments():
    assert parameter_arguments({"--reg": 0.1, "depth": 3}) == ["--reg", "0.1", "--depth", "3"]


class TestHyperDriveConfig:
    """Test sweep configuration validation."""

    def test_defaults(self, script_config):
        config = make_config(script_config, {"--reg": choice(0.1, 0.5)}, max_total_runs=4)

        assert config.max_concurrent_runs == 4
        assert config.maximize
        assert config.policy.name == "none"
        assert config.to_dict()["sampling"]["sampling"] == "grid"

    @pytest.mark.parametrize("kwargs", [
        {"max_total_runs": 0},
        {"max_total_runs": 5000},
        {"max_concurrent_runs": 0},
        {"max_duration_minutes": 0},
        {"primary_metric_name": ""},
        {"primary_metric_goal": "UP"},
    ])
    def test_invalid_limits(self, script_config, kwargs):
        with pytest.raises(SweepConfigurationError):
            make_config(script_config, {"--reg": choice(0.1)}, **kwargs)

    def test_run_config_type_is_checked(self):
        with pytest.raises(SweepConfigurationError):
            HyperDriveConfig(
                run_config=object(),
                hyperparameter_sampling=RandomParameterSampling({"--reg": uniform(0, 1)}),
                primary_metric_name="accuracy",
                primary_metric_goal=PrimaryMetricGoal.MAXIMIZE,
                max_total_runs=2,
            )

    def test_bayesian_rejects_policy(self, script_config):
        with pytest.raises(SweepConfigurationError):
            HyperDriveConfig(
                run_config=script_config,
                hyperparameter_sampling=BayesianParameterSampling({"--reg": uniform(0, 1)}),
                primary_metric_name="accuracy",
                primary_metric_goal=PrimaryMetricGoal.MAXIMIZE,
                max_total_runs=2,
                policy=BanditPolicy(slack_factor=0.1),
            )


class TestSweepExecution:
    """Test sweeps running child script runs."""

    def test_grid_sweep_finds_best_child(self, experiment, script_config):
        config = make_config(script_config, {"--reg": choice(0.1, 0.5, 0.9)}, max_concurrent_runs=2)

        parent = experiment.submit(config)
        details = parent.wait_for_completion(timeout=WAIT)

        assert isinstance(parent, HyperDriveRun)
        assert details["status"] == "Completed"
        children = parent.get_children()
        assert sorted(c.id for c in children) == [f"{parent.id}_{i}" for i in range(3)]
        assert all(c.status == "Completed" for c in children)

        best = parent.get_best_run_by_primary_metric()
        assert best.id == f"{parent.id}_0"
        assert parent.get_hyperparameters()[best.id] == {"--reg": 0.1}
        assert parent.get_properties()["best_child_run_id"] == best.id
        assert parent.get_metric_series("best_accuracy") == [pytest.approx(0.99)]

        ranked = parent.get_children_sorted_by_primary_metric()
        assert [e["hyperparameters"]["--reg"] for e in ranked] == [0.1, 0.5, 0.9]
        assert [e["run_id"] for e in parent.get_children_sorted_by_primary_metric(top=1, reverse=True)] == [
            f"{parent.id}_2"
        ]

    def test_run_handle_type_is_restored(self, experiment, workspace, script_config):
        parent = experiment.submit(make_config(script_config, {"--reg": choice(0.1)}))
        parent.wait_for_completion(timeout=WAIT)

        assert isinstance(Run.get(workspace, parent.id), HyperDriveRun)
        assert parent.get_metrics()[f"{parent.id}_0"]["regularization"] == 0.1
        assert parent.get_metrics()[parent.id]["best_accuracy"] == pytest.approx(0.99)

    def test_space_exhaustion_ends_sweep(self, experiment, script_config):
        parent = experiment.submit(make_config(script_config, {"--reg": choice(0.2, 0.4)}, max_total_runs=10))
        parent.wait_for_completion(timeout=WAIT)

        assert len(parent.get_children()) == 2

    def test_max_total_runs_limits_children(self, experiment, script_config):
        config = make_config(script_config, {"--reg": choice(0.1, 0.2, 0.3, 0.4)}, max_total_runs=2)

        parent = experiment.submit(config)
        parent.wait_for_completion(timeout=WAIT)

        assert len(parent.get_children()) == 2

    def test_all_children_failing_fails_sweep(self, experiment, train_dir):
        run_config = ScriptRunConfig(source_directory=str(train_dir), script="train.py", arguments=["--fail"])

        parent = experiment.submit(make_config(run_config, {"--reg": choice(0.1, 0.2)}))
        details = parent.wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["status"] == "Failed"
        assert details["error"]["message"] == "All child runs failed"

    @pytest.mark.parametrize("policy", [
        BanditPolicy(slack_factor=0.1),
        MedianStoppingPolicy(),
        TruncationSelectionPolicy(truncation_percentage=50),
    ], ids=lambda p: p.name)
    def test_policy_cancels_poor_child(self, experiment, workspace, tmp_path, write_script, policy):
        ComputeTarget.create(workspace, "sweep-cluster", AmlCompute.provisioning_configuration(max_nodes=2))
        source = tmp_path / "steps"
        write_script(source, "steps.py", """
            import argparse
            import time

            from mlstudio.training.run import Run

            parser = argparse.ArgumentParser()
            parser.add_argument("--reg", type=float)
            args = parser.parse_args()

            run = Run.get_context()
            for _ in range(40):
                run.log("accuracy", 1.0 - args.reg / 10)
                time.sleep(0.1)
        """)
        run_config = ScriptRunConfig(source_directory=str(source), script="steps.py", compute_target="sweep-cluster")
        config = make_config(
            run_config,
            {"--reg": choice(0.1, 5.0)},
            policy=policy,
        )

        parent = experiment.submit(config)
        parent.wait_for_completion(timeout=WAIT)

        good, poor = parent.get_children()
        assert good.status == "Completed"
        assert poor.status == "Canceled"
        assert poor.get_tags()["terminated_by_policy"] == policy.name
        assert "terminated_by_policy" not in good.get_tags()
        assert parent.get_best_run_by_primary_metric() == good

    def test_bayesian_sweep_learns_from_finished_children(self, experiment, script_config, mocker):
        observe = mocker.spy(_BayesianSampler, "observe")
        config = HyperDriveConfig(
            run_config=script_config,
            hyperparameter_sampling=BayesianParameterSampling({"--reg": uniform(0.0, 1.0)}, seed=7),
            primary_metric_name="accuracy",
            primary_metric_goal=PrimaryMetricGoal.MAXIMIZE,
            max_total_runs=4,
            max_concurrent_runs=2,
        )

        parent = experiment.submit(config)
        details = parent.wait_for_completion(timeout=WAIT)

        assert details["status"] == "Completed"
        children = parent.get_children()
        assert len(children) == 4
        regs = [params["--reg"] for params in parent.get_hyperparameters().values()]
        assert all(0.0 <= reg <= 1.0 for reg in regs)

        # every finished child is reported back with its final accuracy
        observed = [call.args[2] for call in observe.call_args_list]
        assert sorted(observed) == pytest.approx(sorted(c.get_metrics()["accuracy"] for c in children))
        best = parent.get_best_run_by_primary_metric()
        assert best.get_metrics()["accuracy"] == pytest.approx(max(observed))

    def test_cancel_sweep(self, experiment, tmp_path, write_script):
        source = tmp_path / "slow"
        write_script(source, "slow.py", """
            import time
            time.sleep(60)
        """)
        run_config = ScriptRunConfig(source_directory=str(source), script="slow.py")
        parent = experiment.submit(make_config(run_config, {"--reg": choice(0.1, 0.2)}))

        deadline = time.monotonic() + WAIT
        while not parent.get_children() and time.monotonic() < deadline:
            time.sleep(0.05)
        parent.cancel()
        details = parent.wait_for_completion(timeout=WAIT, raise_on_error=False)

        assert details["status"] == "Canceled"
        assert all(c.status == "Canceled" for c in parent.get_children())
