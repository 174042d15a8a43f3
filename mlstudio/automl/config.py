"""Configuration of an automated model search."""

import logging
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from mlstudio.automl.catalog import algorithm_names
from mlstudio.automl.metrics import DEFAULT_PRIMARY_METRIC, TASK_METRICS
from mlstudio.config import settings
from mlstudio.data.dataset import TabularDataset
from mlstudio.exceptions import AutoMLConfigurationError

logger = logging.getLogger(__name__)

FEATURIZATION_MODES = ("auto", "off")


class AutoMLConfig:
    """
    Settings of an automated model search.

    Args:
        task: 'classification' or 'regression'
        primary_metric: Metric that decides the best model (task default if omitted)
        training_data: Registered dataset or DataFrame holding features and label
        label_column_name: Column to predict
        compute_target: Compute target (name or object); defaults to local
        iterations: Maximum number of candidates
        iteration_timeout_minutes: Fail a candidate that runs longer than this
        experiment_timeout_minutes: Stop starting candidates after this long
        max_concurrent_iterations: Candidates evaluated at once
        n_cross_validations: Folds for cross-validation
        validation_size: Fraction held out instead of cross-validation
        allowed_models: Only try these algorithms
        blocked_models: Never try these algorithms
        featurization: 'auto' or 'off'
        enable_early_stopping: Stop when the score stops improving
        experiment_exit_score: Stop once the primary metric reaches this value
        enable_voting_ensemble: Add a voting ensemble of the best candidates
        model_explainability: Compute feature importance for the best model
        random_state: Seed for parameter sampling and estimators

    Raises:
        AutoMLConfigurationError: If any setting is invalid
    """

    def __init__(
        self,
        task: str,
        primary_metric: Optional[str] = None,
        training_data: Union[TabularDataset, pd.DataFrame, None] = None,
        label_column_name: Optional[str] = None,
        compute_target=None,
        iterations: int = 100,
        iteration_timeout_minutes: Optional[float] = None,
        experiment_timeout_minutes: Optional[float] = None,
        max_concurrent_iterations: int = 1,
        n_cross_validations: Optional[int] = None,
        validation_size: Optional[float] = None,
        allowed_models: Optional[List[str]] = None,
        blocked_models: Optional[List[str]] = None,
        featurization: str = "auto",
        enable_early_stopping: bool = False,
        experiment_exit_score: Optional[float] = None,
        enable_voting_ensemble: bool = True,
        model_explainability: bool = True,
        random_state: Optional[int] = None
    ):
        if task not in TASK_METRICS:
            raise AutoMLConfigurationError(
                f"Unknown task '{task}'", details={"supported": sorted(TASK_METRICS)}
            )
        primary_metric = primary_metric or DEFAULT_PRIMARY_METRIC[task]
        if primary_metric not in TASK_METRICS[task]:
            raise AutoMLConfigurationError(
                f"Unknown primary metric '{primary_metric}' for {task}",
                details={"supported": TASK_METRICS[task]}
            )

        self.task = task
        self.primary_metric = primary_metric
        self.training_data = training_data
        self.label_column_name = label_column_name
        self.compute_target = compute_target
        self.iterations = iterations
        self.iteration_timeout_minutes = iteration_timeout_minutes
        self.experiment_timeout_minutes = experiment_timeout_minutes
        self.max_concurrent_iterations = max_concurrent_iterations
        self.validation_size = validation_size
        self.n_cross_validations = n_cross_validations
        if n_cross_validations is None and validation_size is None:
            self.n_cross_validations = settings.automl.default_n_cross_validations
        self.featurization = featurization
        self.enable_early_stopping = enable_early_stopping
        self.experiment_exit_score = experiment_exit_score
        self.enable_voting_ensemble = enable_voting_ensemble
        self.model_explainability = model_explainability
        self.random_state = random_state if random_state is not None else settings.automl.random_state
        self.allowed_models = self._resolve_models(allowed_models, blocked_models)

        self._validate(n_cross_validations, validation_size)

    def _resolve_models(self, allowed: Optional[List[str]], blocked: Optional[List[str]]) -> List[str]:
        known = algorithm_names(self.task)
        unknown = [m for m in list(allowed or []) + list(blocked or []) if m not in known]
        if unknown:
            raise AutoMLConfigurationError(
                f"Unknown models for {self.task}: {unknown}", details={"supported": known}
            )
        models = [m for m in known if (allowed is None or m in allowed) and m not in (blocked or [])]
        if not models:
            raise AutoMLConfigurationError("allowed_models and blocked_models leave no model to try")
        return models

    def _validate(self, n_cross_validations: Optional[int], validation_size: Optional[float]) -> None:
        if self.training_data is None:
            raise AutoMLConfigurationError("training_data is required")
        if not isinstance(self.training_data, (TabularDataset, pd.DataFrame)):
            raise AutoMLConfigurationError("training_data must be a TabularDataset or DataFrame")
        if not self.label_column_name:
            raise AutoMLConfigurationError("label_column_name is required")
        if self.label_column_name not in self.get_training_frame().columns:
            raise AutoMLConfigurationError(
                f"Label column '{self.label_column_name}' not found in training data"
            )
        if self.iterations < 1:
            raise AutoMLConfigurationError("iterations must be at least 1")
        if self.max_concurrent_iterations < 1:
            raise AutoMLConfigurationError("max_concurrent_iterations must be at least 1")
        if n_cross_validations is not None and validation_size is not None:
            raise AutoMLConfigurationError("Set either n_cross_validations or validation_size, not both")
        if self.n_cross_validations is not None and self.n_cross_validations < 2:
            raise AutoMLConfigurationError("n_cross_validations must be at least 2")
        if validation_size is not None and not 0 < validation_size < 1:
            raise AutoMLConfigurationError("validation_size must be between 0 and 1")
        if self.featurization not in FEATURIZATION_MODES:
            raise AutoMLConfigurationError(
                f"featurization must be one of {FEATURIZATION_MODES}, got '{self.featurization}'"
            )
        for name in ("iteration_timeout_minutes", "experiment_timeout_minutes"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise AutoMLConfigurationError(f"{name} must be positive")

    def get_training_frame(self) -> pd.DataFrame:
        if isinstance(self.training_data, TabularDataset):
            return self.training_data.to_pandas_dataframe()
        return self.training_data.copy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task,
            "primary_metric": self.primary_metric,
            "label_column_name": self.label_column_name,
            "iterations": self.iterations,
            "iteration_timeout_minutes": self.iteration_timeout_minutes,
            "experiment_timeout_minutes": self.experiment_timeout_minutes,
            "max_concurrent_iterations": self.max_concurrent_iterations,
            "n_cross_validations": self.n_cross_validations,
            "validation_size": self.validation_size,
            "allowed_models": self.allowed_models,
            "featurization": self.featurization,
            "enable_early_stopping": self.enable_early_stopping,
            "experiment_exit_score": self.experiment_exit_score,
            "enable_voting_ensemble": self.enable_voting_ensemble,
            "model_explainability": self.model_explainability,
        }

    def _submit(self, experiment, tags: Optional[Dict[str, str]] = None, **kwargs):
        """Create the parent run and start the search controller."""
        from mlstudio.automl.search import submit_search
        return submit_search(experiment, self, tags=tags, **kwargs)
