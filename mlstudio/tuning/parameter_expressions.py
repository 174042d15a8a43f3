"""Expressions describing the search space of one hyperparameter."""

import math
from typing import Any, Dict, List, Tuple

import numpy as np

from mlstudio.exceptions import SweepConfigurationError


class ParameterExpression:
    """A distribution (or set of choices) a hyperparameter is drawn from."""

    def __init__(self, kind: str, args: Tuple[Any, ...]):
        self.kind = kind
        self.args = args

    def __repr__(self) -> str:
        return f"{self.kind}({', '.join(repr(a) for a in self.args)})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ParameterExpression) and (self.kind, self.args) == (other.kind, other.args)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "args": list(self.args)}

    @property
    def is_discrete(self) -> bool:
        return self.kind in ("choice", "randint")

    def options(self) -> List[Any]:
        """All values of a discrete expression."""
        if self.kind == "choice":
            return list(self.args)
        if self.kind == "randint":
            return list(range(self.args[0]))
        raise SweepConfigurationError(f"{self.kind} is not a discrete expression")

    def sample(self, rng: np.random.Generator) -> Any:
        """Draw one value."""
        kind, args = self.kind, self.args

        if kind == "choice":
            return args[int(rng.integers(len(args)))]
        if kind == "randint":
            return int(rng.integers(args[0]))
        if kind == "uniform":
            return float(rng.uniform(args[0], args[1]))
        if kind == "quniform":
            return _quantize(rng.uniform(args[0], args[1]), args[2])
        if kind == "loguniform":
            return float(math.exp(rng.uniform(args[0], args[1])))
        if kind == "qloguniform":
            return _quantize(math.exp(rng.uniform(args[0], args[1])), args[2])
        if kind == "normal":
            return float(rng.normal(args[0], args[1]))
        if kind == "qnormal":
            return _quantize(rng.normal(args[0], args[1]), args[2])
        if kind == "lognormal":
            return float(math.exp(rng.normal(args[0], args[1])))
        if kind == "qlognormal":
            return _quantize(math.exp(rng.normal(args[0], args[1])), args[2])

        raise SweepConfigurationError(f"Unknown parameter expression '{kind}'")


def _quantize(value: float, q: float) -> float:
    return float(round(value / q) * q)


def choice(*options) -> ParameterExpression:
    """Pick one of the given values; accepts ``choice(1, 2)`` or ``choice([1, 2])``."""
    if len(options) == 1 and isinstance(options[0], (list, tuple, range)):
        options = tuple(options[0])
    if not options:
        raise SweepConfigurationError("choice() needs at least one option")
    return ParameterExpression("choice", tuple(options))


def randint(upper: int) -> ParameterExpression:
    """Integer in ``[0, upper)``."""
    if upper < 1:
        raise SweepConfigurationError("randint() upper bound must be at least 1")
    return ParameterExpression("randint", (int(upper),))


def _check_range(name: str, low: float, high: float) -> None:
    if low >= high:
        raise SweepConfigurationError(f"{name}() needs low < high, got {low} >= {high}")


def _check_q(name: str, q: float) -> None:
    if q <= 0:
        raise SweepConfigurationError(f"{name}() needs a positive q, got {q}")


def uniform(min_value: float, max_value: float) -> ParameterExpression:
    _check_range("uniform", min_value, max_value)
    return ParameterExpression("uniform", (min_value, max_value))


def quniform(min_value: float, max_value: float, q: float) -> ParameterExpression:
    """``round(uniform(min, max) / q) * q``."""
    _check_range("quniform", min_value, max_value)
    _check_q("quniform", q)
    return ParameterExpression("quniform", (min_value, max_value, q))


def loguniform(min_value: float, max_value: float) -> ParameterExpression:
    """``exp(uniform(min, max))``; bounds are in log space."""
    _check_range("loguniform", min_value, max_value)
    return ParameterExpression("loguniform", (min_value, max_value))


def qloguniform(min_value: float, max_value: float, q: float) -> ParameterExpression:
    _check_range("qloguniform", min_value, max_value)
    _check_q("qloguniform", q)
    return ParameterExpression("qloguniform", (min_value, max_value, q))


def normal(mu: float, sigma: float) -> ParameterExpression:
    if sigma <= 0:
        raise SweepConfigurationError("normal() needs a positive sigma")
    return ParameterExpression("normal", (mu, sigma))


def qnormal(mu: float, sigma: float, q: float) -> ParameterExpression:
    if sigma <= 0:
        raise SweepConfigurationError("qnormal() needs a positive sigma")
    _check_q("qnormal", q)
    return ParameterExpression("qnormal", (mu, sigma, q))


def lognormal(mu: float, sigma: float) -> ParameterExpression:
    if sigma <= 0:
        raise SweepConfigurationError("lognormal() needs a positive sigma")
    return ParameterExpression("lognormal", (mu, sigma))


def qlognormal(mu: float, sigma: float, q: float) -> ParameterExpression:
    if sigma <= 0:
        raise SweepConfigurationError("qlognormal() needs a positive sigma")
    _check_q("qlognormal", q)
    return ParameterExpression("qlognormal", (mu, sigma, q))
