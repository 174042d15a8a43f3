"""Automated model search: the controller that evaluates candidates and the parent run."""

import io
import json
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import joblib
import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.ensemble import VotingClassifier, VotingRegressor
from sklearn.model_selection import KFold, StratifiedKFold, train_test_split

from mlstudio.automl.catalog import ENSEMBLE_NAME, build_pipeline, get_algorithm
from mlstudio.automl.config import AutoMLConfig
from mlstudio.automl.explain import explain_model
from mlstudio.automl.metrics import (
    average_scores,
    classification_scores,
    is_better,
    is_maximized,
    regression_scores,
)
from mlstudio.compute.target import resolve_compute_target
from mlstudio.config import settings
from mlstudio.data.dataset import TabularDataset
from mlstudio.exceptions import AutoMLConfigurationError, RunNotFoundError, RunStateError
from mlstudio.training.run import Run
from mlstudio.workspace.models import RunStatus

logger = logging.getLogger(__name__)

MODEL_ARTIFACT = "outputs/model.pkl"
EXPLANATION_ARTIFACT = "explanation/feature_importance.json"


class IterationResult:
    """A completed candidate and its fitted model."""

    def __init__(self, run: Run, algorithm: str, pipeline: Any, model: Any, scores: Dict[str, float]):
        self.run = run
        self.algorithm = algorithm
        self.pipeline = pipeline
        self.model = model
        self.scores = scores


def submit_search(experiment, config: AutoMLConfig, tags: Optional[Dict[str, str]] = None, **kwargs) -> "AutoMLRun":
    """Create an automl parent run and start its controller thread."""
    input_datasets = {}
    if isinstance(config.training_data, TabularDataset) and config.training_data.id:
        input_datasets["training_data"] = config.training_data.id

    compute = config.compute_target
    parent = AutoMLRun._create(
        experiment,
        "automl",
        display_name=kwargs.get("display_name"),
        tags=tags,
        compute_target=compute if isinstance(compute, str) or compute is None else compute.name,
        input_datasets=input_datasets,
        properties={
            "task": config.task,
            "primary_metric": config.primary_metric,
            "automl_config": json.dumps(config.to_dict()),
        },
    )
    parent._set_status(RunStatus.QUEUED)

    controller = SearchController(parent, config)
    thread = threading.Thread(target=controller.execute, name=f"automl-{parent.id}", daemon=True)
    thread.start()
    return parent


class SearchController:
    """
    Runs the candidates of one search as child runs.

    Each candidate holds a compute node while it is evaluated. The
    iteration timeout counts from the moment a worker starts the candidate.
    A candidate past it is failed and its result discarded; its worker
    keeps its concurrency slot until the thread actually finishes.
    """

    def __init__(self, parent: "AutoMLRun", config: AutoMLConfig):
        self.parent = parent
        self.config = config
        self.rng = np.random.default_rng(config.random_state)
        self.poll_interval = settings.run.poll_interval_seconds
        self.results: List[IterationResult] = []
        self.best: Optional[IterationResult] = None
        self._since_improvement = 0
        self._running_since: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def is_classification(self) -> bool:
        return self.config.task == "classification"

    def execute(self) -> RunStatus:
        try:
            self._execute()
        except Exception as e:
            logger.exception(f"AutoML run {self.parent.id} failed")
            code = "UserError" if isinstance(e, AutoMLConfigurationError) else "SystemError"
            self.parent._set_status(
                RunStatus.FAILED, error={"code": code, "message": f"{type(e).__name__}: {e}"}
            )
        return RunStatus(self.parent.status)

    # ------------------------------------------------------------------
    # Data and evaluation
    # ------------------------------------------------------------------

    def _prepare_data(self) -> None:
        label = self.config.label_column_name
        frame = self.config.get_training_frame().dropna(subset=[label]).reset_index(drop=True)
        y = frame.pop(label)
        for column in frame.columns:
            if pd.api.types.is_bool_dtype(frame[column]):
                frame[column] = frame[column].astype(int)

        if self.is_classification and y.nunique() < 2:
            raise AutoMLConfigurationError("Classification needs at least two classes in the label column")

        self.X = frame
        self.y = y
        self.y_range = None if self.is_classification else float(y.max() - y.min())

        indices = np.arange(len(frame))
        stratify = y if self.is_classification else None
        if self.config.validation_size is not None:
            train, test = train_test_split(
                indices,
                test_size=self.config.validation_size,
                random_state=self.config.random_state,
                stratify=stratify,
            )
            self.splits = [(train, test)]
        else:
            splitter_cls = StratifiedKFold if self.is_classification else KFold
            splitter = splitter_cls(
                n_splits=self.config.n_cross_validations, shuffle=True, random_state=self.config.random_state
            )
            self.splits = list(splitter.split(frame, y))

        logger.info(
            f"AutoML {self.parent.id}: {len(frame)} rows, {frame.shape[1]} features, {len(self.splits)} split(s)"
        )

    def _score(self, model: Any, X: pd.DataFrame, y: pd.Series) -> Dict[str, float]:
        if self.is_classification:
            return classification_scores(
                y.to_numpy(), model.predict(X), model.predict_proba(X), model.classes_
            )
        return regression_scores(y.to_numpy(), model.predict(X), self.y_range)

    def evaluate(self, pipeline: Any) -> Dict[str, float]:
        """Average metrics of ``pipeline`` over the validation splits."""
        folds = []
        for train, test in self.splits:
            model = clone(pipeline).fit(self.X.iloc[train], self.y.iloc[train])
            folds.append(self._score(model, self.X.iloc[test], self.y.iloc[test]))
        return average_scores(folds)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def _candidates(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Each allowed algorithm with defaults, then random draws."""
        for name in self.config.allowed_models:
            yield name, {}
        while True:
            name = self.config.allowed_models[int(self.rng.integers(len(self.config.allowed_models)))]
            yield name, get_algorithm(self.config.task, name).sample_params(self.rng)

    def _build(self, name: str, params: Dict[str, Any]) -> Any:
        estimator = get_algorithm(self.config.task, name).build(params, self.config.random_state)
        return build_pipeline(estimator, self.X, self.config.featurization)

    def _start_iteration(self, index: int, name: str, params: Dict[str, Any]) -> Run:
        child = Run._create(
            self.parent.experiment,
            "automl_iteration",
            display_name=name,
            parent=self.parent,
            run_id=f"{self.parent.id}_{index}",
            hyperparameters=params,
            properties={"iteration": index, "algorithm": name},
            input_datasets=self.parent._record().input_datasets,
        )
        child._set_status(RunStatus.QUEUED)
        return child

    def _run_iteration(self, child: Run, name: str, pipeline: Any, cluster) -> Optional[IterationResult]:
        """Evaluate, fit on all data and store one candidate; releases its node."""
        try:
            if not child._set_status(RunStatus.RUNNING):
                logger.info(f"Skipping {child.id}: run is already {child.status}")
                return None
            with self._lock:
                self._running_since[child.id] = time.monotonic()

            scores = self.evaluate(pipeline)
            model = clone(pipeline).fit(self.X, self.y)

            if RunStatus(child.status).is_terminal:
                logger.info(f"Discarding result of {child.id}: run is already {child.status}")
                return None

            for metric, value in scores.items():
                child.log(metric, value)
            buffer = io.BytesIO()
            joblib.dump(model, buffer)
            buffer.seek(0)
            child.upload_file(MODEL_ARTIFACT, buffer)
            child._set_status(RunStatus.COMPLETED)

            logger.info(f"Iteration {child.id} ({name}): {self.config.primary_metric}={scores[self.config.primary_metric]:.4f}")
            return IterationResult(child, name, pipeline, model, scores)
        except Exception as e:
            logger.warning(f"Iteration {child.id} ({name}) failed: {e}")
            child._set_status(RunStatus.FAILED, error={"code": type(e).__name__, "message": str(e)})
            return None
        finally:
            cluster.release_node()

    def _record(self, result: IterationResult) -> None:
        metric = self.config.primary_metric
        with self._lock:
            self.results.append(result)
            incumbent = self.best.scores[metric] if self.best is not None else None
            if is_better(result.scores[metric], incumbent, metric):
                self.best = result
                self._since_improvement = 0
            else:
                self._since_improvement += 1

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _stop_reason(self, launched: int, started: float) -> Optional[str]:
        config = self.config
        metric = config.primary_metric

        if launched >= config.iterations:
            return "iterations"
        if config.experiment_timeout_minutes is not None and \
                time.monotonic() - started > config.experiment_timeout_minutes * 60:
            return "experiment_timeout"
        if config.experiment_exit_score is not None and self.best is not None:
            best = self.best.scores[metric]
            reached = best >= config.experiment_exit_score if is_maximized(metric) else best <= config.experiment_exit_score
            if reached:
                return "exit_score"
        if config.enable_early_stopping and len(self.results) >= len(config.allowed_models) and \
                self._since_improvement >= settings.automl.early_stopping_n_iters:
            return "early_stopping"
        return None

    def _execute(self) -> None:
        parent, config = self.parent, self.config
        parent._set_status(RunStatus.RUNNING)
        self._prepare_data()

        cluster = resolve_compute_target(parent.workspace, config.compute_target).cluster
        candidates = self._candidates()
        iteration_timeout = None
        if config.iteration_timeout_minutes is not None:
            iteration_timeout = config.iteration_timeout_minutes * 60

        executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_iterations, thread_name_prefix=f"automl-{parent.id}"
        )
        pending: Dict[Any, Run] = {}
        # timed out but still occupying a worker
        expired: Set[Any] = set()
        started = time.monotonic()
        launched = 0
        stop_reason: Optional[str] = None

        try:
            while True:
                if parent.cancel_requested:
                    for child in pending.values():
                        child.cancel()
                    pending.clear()
                    stop_reason = "canceled"
                    break

                if stop_reason is None:
                    stop_reason = self._stop_reason(launched, started)

                expired = {f for f in expired if not f.done()}
                while stop_reason is None and len(pending) + len(expired) < config.max_concurrent_iterations:
                    if not cluster.acquire_node(timeout=0):
                        break
                    name, params = next(candidates)
                    try:
                        child = self._start_iteration(launched, name, params)
                        pipeline = self._build(name, params)
                    except Exception:
                        cluster.release_node()
                        raise
                    future = executor.submit(self._run_iteration, child, name, pipeline, cluster)
                    pending[future] = child
                    launched += 1
                    stop_reason = self._stop_reason(launched, started)

                if not pending:
                    if stop_reason is not None:
                        break
                    time.sleep(self.poll_interval)
                    continue

                done, _ = wait(list(pending), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.pop(future)
                    result = future.result()
                    if result is not None:
                        self._record(result)

                if iteration_timeout is not None:
                    self._expire(pending, expired, iteration_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(f"AutoML {parent.id} stopped after {launched} iteration(s): {stop_reason}")

        if stop_reason == "canceled":
            parent._set_status(RunStatus.CANCELED)
            return

        if config.enable_voting_ensemble and len(self.results) >= 2:
            self._run_ensemble(launched, cluster)

        self._finish(stop_reason)

    def _expire(self, pending: Dict[Any, Run], expired: Set[Any], timeout: float) -> None:
        """Fail candidates running longer than ``timeout``; queued ones are not timed."""
        now = time.monotonic()
        for future, child in list(pending.items()):
            with self._lock:
                began = self._running_since.get(child.id)
            if began is not None and now - began > timeout:
                logger.warning(f"Iteration {child.id} exceeded {timeout}s, failing it")
                child._set_status(
                    RunStatus.FAILED,
                    error={"code": "RunTimeoutError", "message": f"Iteration exceeded {timeout} seconds"}
                )
                pending.pop(future)
                if not future.done():
                    expired.add(future)

    def _run_ensemble(self, index: int, cluster) -> None:
        metric = self.config.primary_metric
        ranked = sorted(self.results, key=lambda r: r.scores[metric], reverse=is_maximized(metric))
        members = ranked[:settings.automl.ensemble_size]

        estimators = [(f"{r.algorithm}_{i}", r.pipeline) for i, r in enumerate(members)]
        if self.is_classification:
            ensemble = VotingClassifier(estimators, voting="soft")
        else:
            ensemble = VotingRegressor(estimators)

        cluster.acquire_node()
        child = self._start_iteration(index, ENSEMBLE_NAME, {"ensembled_iterations": [r.run.id for r in members]})
        result = self._run_iteration(child, ENSEMBLE_NAME, ensemble, cluster)
        if result is not None:
            self._record(result)

    def _finish(self, stop_reason: Optional[str]) -> None:
        parent, config = self.parent, self.config
        if self.best is None:
            parent._set_status(
                RunStatus.FAILED,
                error={"code": "UserError", "message": "No iteration completed successfully"}
            )
            return

        best = self.best
        parent.add_properties({
            "best_child_run_id": best.run.id,
            "best_algorithm": best.algorithm,
            "stop_reason": stop_reason,
        })
        parent.log(config.primary_metric, best.scores[config.primary_metric])

        if config.model_explainability:
            self._explain(best)

        parent._set_status(RunStatus.COMPLETED)

    def _explain(self, best: IterationResult) -> None:
        try:
            explanation = explain_model(
                best.model,
                self.X,
                self.y,
                self.config.primary_metric,
                n_repeats=settings.automl.explanation_repeats,
                random_state=self.config.random_state,
            )
        except Exception as e:
            logger.error(f"Feature importance for {best.run.id} failed: {e}")
            self.parent.add_properties({"explanation_error": str(e)})
            return

        explanation["run_id"] = best.run.id
        payload = json.dumps(explanation, indent=2).encode()
        for run in (self.parent, best.run):
            run.upload_file(EXPLANATION_ARTIFACT, io.BytesIO(payload))


class AutoMLRun(Run):
    """Parent run of an automated model search."""

    @property
    def primary_metric(self) -> str:
        return self.get_properties()["primary_metric"]

    @property
    def task(self) -> str:
        return self.get_properties()["task"]

    def _completed_children(self) -> List[Run]:
        return [c for c in self.get_children() if c.status == RunStatus.COMPLETED.value]

    def get_output(self, metric: Optional[str] = None, iteration: Optional[int] = None) -> Tuple[Run, Any]:
        """
        Best child run and its fitted model.

        Args:
            metric: Rank by this metric instead of the primary metric
            iteration: Return this iteration instead of the best one

        Returns:
            Tuple of (run, fitted model)

        Raises:
            RunNotFoundError: If no matching completed iteration exists
        """
        if iteration is not None:
            child = Run.get(self.workspace, f"{self.id}_{iteration}")
            if child.status != RunStatus.COMPLETED.value:
                raise RunStateError(f"Iteration {iteration} of {self.id} is {child.status}")
            return child, joblib.load(child.artifact_local_path(MODEL_ARTIFACT))

        metric = metric or self.primary_metric
        best_run, best_value = None, None
        for child in self._completed_children():
            value = child.get_metrics(metric).get(metric)
            if isinstance(value, (int, float)) and is_better(value, best_value, metric):
                best_run, best_value = child, value

        if best_run is None:
            raise RunNotFoundError(f"Run {self.id} has no completed iteration with metric '{metric}'")
        return best_run, joblib.load(best_run.artifact_local_path(MODEL_ARTIFACT))

    def get_feature_importance(self) -> Dict[str, float]:
        """
        Permutation importance of each input column for the best model.

        Raises:
            FileNotFoundError: If no explanation was computed
        """
        path = self.artifact_local_path(EXPLANATION_ARTIFACT)
        if not path.exists():
            raise FileNotFoundError(f"Run {self.id} has no feature importance")
        with open(path, 'r') as f:
            return json.load(f)["importances"]
