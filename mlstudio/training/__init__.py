"""Experiments, runs, environments and script job execution"""

from .environment import Environment
from .experiment import Experiment
from .run import Run, OfflineRun
from .script_run_config import ScriptRunConfig

__all__ = [
    "Environment",
    "Experiment",
    "Run",
    "OfflineRun",
    "ScriptRunConfig",
]
