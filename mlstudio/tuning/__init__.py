"""Hyperparameter sweeps"""

from .parameter_expressions import (
    choice,
    randint,
    uniform,
    quniform,
    loguniform,
    qloguniform,
    normal,
    qnormal,
    lognormal,
    qlognormal,
)
from .policy import BanditPolicy, MedianStoppingPolicy, NoTerminationPolicy, TruncationSelectionPolicy
from .sampling import BayesianParameterSampling, GridParameterSampling, RandomParameterSampling
from .sweep import HyperDriveConfig, HyperDriveRun, PrimaryMetricGoal

__all__ = [
    "choice",
    "randint",
    "uniform",
    "quniform",
    "loguniform",
    "qloguniform",
    "normal",
    "qnormal",
    "lognormal",
    "qlognormal",
    "BanditPolicy",
    "MedianStoppingPolicy",
    "NoTerminationPolicy",
    "TruncationSelectionPolicy",
    "BayesianParameterSampling",
    "GridParameterSampling",
    "RandomParameterSampling",
    "HyperDriveConfig",
    "HyperDriveRun",
    "PrimaryMetricGoal",
]
