"""Hyperparameter sweeps: configuration, controller and parent run."""

import json
import logging
import threading
import time
from enum import Enum
from typing import Optional, Dict, Any, List

from mlstudio.config import settings
from mlstudio.exceptions import SweepConfigurationError
from mlstudio.training.job_runner import ScriptJobRunner
from mlstudio.training.run import Run
from mlstudio.training.script_run_config import ScriptRunConfig
from mlstudio.tuning.policy import EarlyTerminationPolicy, NoTerminationPolicy
from mlstudio.tuning.sampling import BayesianParameterSampling, HyperParameterSampling
from mlstudio.workspace.models import RunStatus

logger = logging.getLogger(__name__)


class PrimaryMetricGoal(str, Enum):
    MAXIMIZE = "MAXIMIZE"
    MINIMIZE = "MINIMIZE"


def parameter_arguments(params: Dict[str, Any]) -> List[str]:
    """Render an assignment as ``--name value`` script arguments."""
    arguments: List[str] = []
    for name, value in params.items():
        arguments.append(name if name.startswith("-") else f"--{name}")
        arguments.append(str(value))
    return arguments


class HyperDriveConfig:
    """
    Configuration of a hyperparameter sweep over a script run.

    Args:
        run_config: Script run every child executes
        hyperparameter_sampling: Parameter space and sampling strategy
        primary_metric_name: Metric the children log and the sweep optimizes
        primary_metric_goal: Maximize or minimize the primary metric
        policy: Early-termination policy (not allowed with Bayesian sampling)
        max_total_runs: Upper bound on child runs
        max_concurrent_runs: Children running at once (defaults to max_total_runs)
        max_duration_minutes: Stop launching and cancel children after this long

    Raises:
        SweepConfigurationError: If the combination is invalid
    """

    def __init__(
        self,
        run_config: ScriptRunConfig,
        hyperparameter_sampling: HyperParameterSampling,
        primary_metric_name: str,
        primary_metric_goal: PrimaryMetricGoal,
        max_total_runs: int,
        max_concurrent_runs: Optional[int] = None,
        max_duration_minutes: int = 10080,
        policy: Optional[EarlyTerminationPolicy] = None
    ):
        if not isinstance(run_config, ScriptRunConfig):
            raise SweepConfigurationError("run_config must be a ScriptRunConfig")
        if not isinstance(hyperparameter_sampling, HyperParameterSampling):
            raise SweepConfigurationError("hyperparameter_sampling must be a sampling strategy")
        if not primary_metric_name:
            raise SweepConfigurationError("primary_metric_name is required")

        try:
            primary_metric_goal = PrimaryMetricGoal(primary_metric_goal)
        except ValueError:
            raise SweepConfigurationError(f"Unknown primary metric goal '{primary_metric_goal}'")

        limits = settings.sweep
        if not 1 <= max_total_runs <= limits.max_total_runs_limit:
            raise SweepConfigurationError(
                f"max_total_runs must be between 1 and {limits.max_total_runs_limit}"
            )
        if max_concurrent_runs is None:
            max_concurrent_runs = min(max_total_runs, limits.max_concurrent_runs_limit)
        if not 1 <= max_concurrent_runs <= limits.max_concurrent_runs_limit:
            raise SweepConfigurationError(
                f"max_concurrent_runs must be between 1 and {limits.max_concurrent_runs_limit}"
            )
        if max_duration_minutes <= 0:
            raise SweepConfigurationError("max_duration_minutes must be positive")

        if isinstance(hyperparameter_sampling, BayesianParameterSampling):
            if policy is not None and not isinstance(policy, NoTerminationPolicy):
                raise SweepConfigurationError("Bayesian sampling does not support early termination policies")

        self.run_config = run_config
        self.hyperparameter_sampling = hyperparameter_sampling
        self.primary_metric_name = primary_metric_name
        self.primary_metric_goal = primary_metric_goal
        self.policy = policy or NoTerminationPolicy()
        self.max_total_runs = max_total_runs
        self.max_concurrent_runs = max_concurrent_runs
        self.max_duration_minutes = max_duration_minutes

    @property
    def maximize(self) -> bool:
        return self.primary_metric_goal == PrimaryMetricGoal.MAXIMIZE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_metric_name": self.primary_metric_name,
            "primary_metric_goal": self.primary_metric_goal.value,
            "max_total_runs": self.max_total_runs,
            "max_concurrent_runs": self.max_concurrent_runs,
            "max_duration_minutes": self.max_duration_minutes,
            "sampling": self.hyperparameter_sampling.to_dict(),
            "policy": self.policy.to_dict(),
        }

    def _submit(self, experiment, tags: Optional[Dict[str, str]] = None, **kwargs) -> "HyperDriveRun":
        """Create the parent run and start the sweep controller."""
        config = self.to_dict()
        parent = HyperDriveRun._create(
            experiment,
            "hyperdrive",
            display_name=kwargs.get("display_name"),
            tags=tags,
            compute_target=self.run_config.compute_target_name,
            script=self.run_config.script,
            properties={
                "primary_metric_name": self.primary_metric_name,
                "primary_metric_goal": self.primary_metric_goal.value,
                "hyperdrive_config": json.dumps(config),
            },
        )
        parent._set_status(RunStatus.QUEUED)

        controller = SweepController(parent, self)
        thread = threading.Thread(target=controller.execute, name=f"sweep-{parent.id}", daemon=True)
        thread.start()
        return parent


class SweepController:
    """
    Drives one sweep: launches children, applies the policy and records the best child.

    Children are ordinary script runs; each takes a node on the compute
    target through its own job runner.
    """

    def __init__(self, parent: "HyperDriveRun", config: HyperDriveConfig):
        self.parent = parent
        self.config = config
        self.poll_interval = settings.run.poll_interval_seconds
        self.policy_interval = settings.sweep.policy_check_interval_seconds
        self.sampler = config.hyperparameter_sampling.sampler(config.maximize)
        self.children: List[Run] = []
        self._active: Dict[str, Dict[str, Any]] = {}

    def execute(self) -> RunStatus:
        try:
            self._execute()
        except Exception as e:
            logger.exception(f"Sweep {self.parent.id} failed unexpectedly")
            self._cancel_active()
            self.parent._set_status(
                RunStatus.FAILED, error={"code": "SystemError", "message": f"{type(e).__name__}: {e}"}
            )
        return RunStatus(self.parent.status)

    def _execute(self) -> None:
        parent, config = self.parent, self.config
        parent._set_status(RunStatus.RUNNING)

        started = time.monotonic()
        max_duration = config.max_duration_minutes * 60
        last_policy_check = 0.0
        exhausted = False
        canceled = False
        timed_out = False

        while True:
            if not canceled and parent.cancel_requested:
                logger.info(f"Sweep {parent.id} canceled, stopping {len(self._active)} children")
                self._cancel_active()
                canceled = True

            if not timed_out and time.monotonic() - started > max_duration:
                logger.info(f"Sweep {parent.id} reached max_duration_minutes, canceling children")
                self._cancel_active()
                timed_out = True

            self._reap()

            stop_launching = canceled or timed_out or exhausted or len(self.children) >= config.max_total_runs
            while not stop_launching and len(self._active) < config.max_concurrent_runs:
                suggestion = self.sampler.suggest()
                if suggestion is None:
                    logger.info(f"Sweep {parent.id} exhausted its parameter space")
                    exhausted = stop_launching = True
                    break
                self._launch(*suggestion)
                stop_launching = len(self.children) >= config.max_total_runs

            if stop_launching and not self._active:
                break

            now = time.monotonic()
            if now - last_policy_check >= self.policy_interval:
                self._apply_policy()
                last_policy_check = now

            time.sleep(self.poll_interval)

        self._finish(canceled)

    def _launch(self, token: Any, params: Dict[str, Any]) -> None:
        index = len(self.children)
        child = self.config.run_config._create_run(
            self.parent.experiment,
            parent=self.parent,
            run_id=f"{self.parent.id}_{index}",
            extra_arguments=parameter_arguments(params),
            hyperparameters=params,
            tags={"hyperparameters": json.dumps(params, sort_keys=True, default=str)},
        )
        thread = ScriptJobRunner(child, self.config.run_config).start()
        self.children.append(child)
        self._active[child.id] = {"run": child, "token": token, "thread": thread}
        logger.info(f"Sweep {self.parent.id} launched child {child.id} with {params}")

    def _reap(self) -> None:
        """Forget finished children and report their results to the sampler."""
        for run_id, entry in list(self._active.items()):
            if entry["thread"].is_alive():
                continue
            child = entry["run"]
            value = None
            if child.status == RunStatus.COMPLETED.value:
                series = child.get_metric_series(self.config.primary_metric_name)
                value = series[-1] if series else None
            self.sampler.observe(entry["token"], value)
            del self._active[run_id]

    def _cancel_active(self) -> None:
        for entry in self._active.values():
            entry["run"].cancel()

    def _apply_policy(self) -> None:
        if not self._active:
            return
        metric = self.config.primary_metric_name
        series = {child.id: child.get_metric_series(metric) for child in self.children}
        for run_id in self.config.policy.runs_to_terminate(series, set(self._active), self.config.maximize):
            logger.info(f"Sweep {self.parent.id}: {self.config.policy.name} policy cancels {run_id}")
            child = self._active[run_id]["run"]
            child.tag("terminated_by_policy", self.config.policy.name)
            child.cancel()

    def _finish(self, canceled: bool) -> None:
        parent = self.parent
        best = parent.get_best_run_by_primary_metric()
        if best is not None:
            value = _final_value(best, self.config.primary_metric_name)
            parent.add_properties({"best_child_run_id": best.id})
            parent.log(f"best_{self.config.primary_metric_name}", value)
            logger.info(f"Sweep {parent.id} best child {best.id} ({self.config.primary_metric_name}={value})")

        if canceled:
            parent._set_status(RunStatus.CANCELED)
        elif self.children and all(c.status == RunStatus.FAILED.value for c in self.children):
            parent._set_status(
                RunStatus.FAILED, error={"code": "UserError", "message": "All child runs failed"}
            )
        else:
            parent._set_status(RunStatus.COMPLETED)


def _final_value(run: Run, metric: str) -> Optional[float]:
    series = run.get_metric_series(metric)
    return series[-1] if series else None


class HyperDriveRun(Run):
    """Parent run of a hyperparameter sweep."""

    @property
    def primary_metric_name(self) -> str:
        return self.get_properties()["primary_metric_name"]

    @property
    def maximize(self) -> bool:
        return self.get_properties()["primary_metric_goal"] == PrimaryMetricGoal.MAXIMIZE.value

    def get_children_sorted_by_primary_metric(
        self,
        top: int = 0,
        reverse: bool = False,
        discard_no_metric: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Children ordered best first by their final primary metric value.

        Args:
            top: Return at most this many entries (0 returns all)
            reverse: Order worst first
            discard_no_metric: Leave out children that never logged the metric

        Returns:
            List of dicts with run_id, hyperparameters, best_primary_metric and status
        """
        metric = self.primary_metric_name
        entries = []
        for child in self.get_children():
            value = _final_value(child, metric)
            if value is None and discard_no_metric:
                continue
            entries.append({
                "run_id": child.id,
                "hyperparameters": child._record().hyperparameters,
                "best_primary_metric": value,
                "status": child.status,
            })

        with_metric = [e for e in entries if e["best_primary_metric"] is not None]
        without_metric = [e for e in entries if e["best_primary_metric"] is None]
        with_metric.sort(key=lambda e: e["best_primary_metric"], reverse=self.maximize)
        ordered = with_metric + without_metric
        if reverse:
            ordered.reverse()
        return ordered[:top] if top else ordered

    def get_best_run_by_primary_metric(
        self,
        include_failed: bool = True,
        include_canceled: bool = True
    ) -> Optional[Run]:
        """Child with the best final primary metric, or None if no child logged it."""
        excluded = set()
        if not include_failed:
            excluded.add(RunStatus.FAILED.value)
        if not include_canceled:
            excluded.add(RunStatus.CANCELED.value)

        for entry in self.get_children_sorted_by_primary_metric(discard_no_metric=True):
            if entry["status"] not in excluded:
                return Run.get(self.workspace, entry["run_id"])
        return None

    def get_hyperparameters(self) -> Dict[str, Dict[str, Any]]:
        return {child.id: child._record().hyperparameters for child in self.get_children()}

    def get_metrics(self, name: Optional[str] = None, recursive: bool = False) -> Dict[str, Any]:
        """
        Metrics keyed by run id: the sweep's own (``best_<metric>``) and each child's.

        With ``recursive`` the children's own descendants are included too.
        """
        metrics = {self.id: super().get_metrics(name)}
        for child in self.get_children(recursive=recursive):
            metrics[child.id] = child.get_metrics(name)
        return metrics
