"""Sampling strategies that produce hyperparameter assignments for a sweep."""

import itertools
import json
import logging
from typing import Any, Dict, Iterator, Optional, Tuple

import numpy as np

try:
    import optuna
    from optuna.distributions import CategoricalDistribution, FloatDistribution
    from optuna.trial import TrialState
    OPTUNA_AVAILABLE = True
except ImportError:
    OPTUNA_AVAILABLE = False
    optuna = None

from mlstudio.exceptions import SweepConfigurationError
from mlstudio.tuning.parameter_expressions import ParameterExpression

logger = logging.getLogger(__name__)

MAX_RESAMPLE_ATTEMPTS = 100


class ParameterSampler:
    """Stateful source of assignments for one sweep."""

    def suggest(self) -> Optional[Tuple[Any, Dict[str, Any]]]:
        """
        Next assignment.

        Returns:
            Tuple of (token, params), or None when the space is exhausted.
            The token is handed back to :meth:`observe`.
        """
        raise NotImplementedError

    def observe(self, token: Any, value: Optional[float]) -> None:
        """Report the primary metric of a finished assignment (None if it failed)."""


class HyperParameterSampling:
    """Base class: a parameter space plus the rule for walking it."""

    supported_kinds: Optional[frozenset] = None
    name = "base"

    def __init__(self, parameter_space: Dict[str, ParameterExpression]):
        if not parameter_space:
            raise SweepConfigurationError("Parameter space must not be empty")

        for parameter, expression in parameter_space.items():
            if not isinstance(expression, ParameterExpression):
                raise SweepConfigurationError(
                    f"Parameter '{parameter}' must be a parameter expression, got {type(expression).__name__}"
                )
            if self.supported_kinds is not None and expression.kind not in self.supported_kinds:
                raise SweepConfigurationError(
                    f"{type(self).__name__} does not support {expression.kind}() "
                    f"(parameter '{parameter}'); supported: {sorted(self.supported_kinds)}"
                )

        self.parameter_space = dict(parameter_space)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sampling": self.name,
            "parameter_space": {k: v.to_dict() for k, v in self.parameter_space.items()},
        }

    def sampler(self, maximize: bool) -> ParameterSampler:
        raise NotImplementedError


class _GridSampler(ParameterSampler):
    def __init__(self, parameter_space: Dict[str, ParameterExpression]):
        names = list(parameter_space)
        self._combinations: Iterator = (
            dict(zip(names, values))
            for values in itertools.product(*(parameter_space[n].options() for n in names))
        )
        self._count = 0

    def suggest(self) -> Optional[Tuple[Any, Dict[str, Any]]]:
        params = next(self._combinations, None)
        if params is None:
            return None
        self._count += 1
        return self._count, params


class GridParameterSampling(HyperParameterSampling):
    """Every combination of ``choice`` values, in order."""

    supported_kinds = frozenset({"choice"})
    name = "grid"

    @property
    def space_size(self) -> int:
        size = 1
        for expression in self.parameter_space.values():
            size *= len(expression.options())
        return size

    def sampler(self, maximize: bool) -> ParameterSampler:
        return _GridSampler(self.parameter_space)


class _RandomSampler(ParameterSampler):
    def __init__(self, parameter_space: Dict[str, ParameterExpression], seed: Optional[int]):
        self._space = parameter_space
        self._rng = np.random.default_rng(seed)
        self._seen = set()
        self._count = 0
        self._discrete_size: Optional[int] = None
        if all(e.is_discrete for e in parameter_space.values()):
            size = 1
            for expression in parameter_space.values():
                size *= len(expression.options())
            self._discrete_size = size

    def suggest(self) -> Optional[Tuple[Any, Dict[str, Any]]]:
        if self._discrete_size is not None and len(self._seen) >= self._discrete_size:
            return None

        for _ in range(MAX_RESAMPLE_ATTEMPTS):
            params = {name: expr.sample(self._rng) for name, expr in self._space.items()}
            key = json.dumps(params, sort_keys=True, default=str)
            if key not in self._seen:
                self._seen.add(key)
                self._count += 1
                return self._count, params

        logger.info("Random sampling could not find a new assignment; treating space as exhausted")
        return None


class RandomParameterSampling(HyperParameterSampling):
    """Independent random draws from every expression; assignments are not repeated."""

    name = "random"

    def __init__(self, parameter_space: Dict[str, ParameterExpression], seed: Optional[int] = None):
        super().__init__(parameter_space)
        self.seed = seed

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["seed"] = self.seed
        return data

    def sampler(self, maximize: bool) -> ParameterSampler:
        return _RandomSampler(self.parameter_space, self.seed)


class _BayesianSampler(ParameterSampler):
    def __init__(self, parameter_space: Dict[str, ParameterExpression], maximize: bool, seed: Optional[int]):
        self._study = optuna.create_study(
            direction="maximize" if maximize else "minimize",
            sampler=optuna.samplers.TPESampler(seed=seed),
        )
        self._distributions = {
            name: self._to_distribution(expression)
            for name, expression in parameter_space.items()
        }

    @staticmethod
    def _to_distribution(expression: ParameterExpression):
        if expression.kind == "choice":
            return CategoricalDistribution(list(expression.args))
        if expression.kind == "uniform":
            return FloatDistribution(expression.args[0], expression.args[1])
        low, high, q = expression.args
        # optuna needs the range to be a multiple of the step
        steps = max(1, int(round((high - low) / q)))
        return FloatDistribution(low, low + steps * q, step=q)

    def suggest(self) -> Optional[Tuple[Any, Dict[str, Any]]]:
        trial = self._study.ask(self._distributions)
        return trial, dict(trial.params)

    def observe(self, token: Any, value: Optional[float]) -> None:
        if value is None:
            self._study.tell(token, state=TrialState.FAIL)
        else:
            self._study.tell(token, float(value))


class BayesianParameterSampling(HyperParameterSampling):
    """
    Tree-structured Parzen estimator driven by the results of finished runs.

    Supports ``choice``, ``uniform`` and ``quniform`` and cannot be combined
    with an early-termination policy.
    """

    supported_kinds = frozenset({"choice", "uniform", "quniform"})
    name = "bayesian"

    def __init__(self, parameter_space: Dict[str, ParameterExpression], seed: Optional[int] = None):
        if not OPTUNA_AVAILABLE:
            raise ImportError(
                "Optuna is required for Bayesian sampling. "
                "Install it with: pip install optuna"
            )
        super().__init__(parameter_space)
        self.seed = seed

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["seed"] = self.seed
        return data

    def sampler(self, maximize: bool) -> ParameterSampler:
        return _BayesianSampler(self.parameter_space, maximize, self.seed)
