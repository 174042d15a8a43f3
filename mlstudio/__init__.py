"""
mlstudio: a self-hosted machine learning workspace.

Register datasets, provision compute targets, track experiment runs, sweep
hyperparameters, search models automatically, keep a model registry and
run multi-step pipelines, all stored under one workspace directory.
"""

__version__ = "0.1.0"

from mlstudio.workspace import Workspace
from mlstudio.data import Dataset
from mlstudio.compute import AmlCompute, ComputeTarget
from mlstudio.training import Environment, Experiment, Run, ScriptRunConfig
from mlstudio.registry import Model

__all__ = [
    "__version__",
    "Workspace",
    "Dataset",
    "AmlCompute",
    "ComputeTarget",
    "Environment",
    "Experiment",
    "Run",
    "ScriptRunConfig",
    "Model",
]
