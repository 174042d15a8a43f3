"""Multi-step pipelines"""

from .data import PipelineData, PipelineParameter
from .pipeline import Pipeline
from .published import PublishedPipeline
from .run import PipelineRun, StepRun
from .steps import PythonScriptStep

__all__ = [
    "PipelineData",
    "PipelineParameter",
    "Pipeline",
    "PublishedPipeline",
    "PipelineRun",
    "StepRun",
    "PythonScriptStep",
]
