"""Script run configuration: what to execute, where and in which environment."""

import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from mlstudio.exceptions import ValidationError
from mlstudio.training.environment import Environment
from mlstudio.workspace.models import RunStatus

logger = logging.getLogger(__name__)


class ScriptRunConfig:
    """
    Describes a training job: an entry-point script in a source directory,
    its arguments, the compute target and the environment.
    """

    def __init__(
        self,
        source_directory: str,
        script: str,
        arguments: Optional[List[Any]] = None,
        compute_target=None,
        environment: Optional[Environment] = None,
        max_run_duration_seconds: Optional[int] = None
    ):
        if not Path(source_directory).is_dir():
            raise ValidationError(f"Source directory '{source_directory}' does not exist")
        if max_run_duration_seconds is not None and max_run_duration_seconds <= 0:
            raise ValidationError("max_run_duration_seconds must be positive")

        self.source_directory = str(source_directory)
        self.script = script
        self.arguments = list(arguments or [])
        self.compute_target = compute_target
        self.environment = environment
        self.max_run_duration_seconds = max_run_duration_seconds

    def __repr__(self) -> str:
        return f"ScriptRunConfig(script={self.script!r}, source_directory={self.source_directory!r})"

    @property
    def compute_target_name(self) -> str:
        from mlstudio.compute.target import LOCAL_COMPUTE_NAME
        target = self.compute_target
        if target is None:
            return LOCAL_COMPUTE_NAME
        return target if isinstance(target, str) else target.name

    def resolve_arguments(self, extra: Optional[List[Any]] = None) -> Tuple[List[str], Dict[str, str]]:
        """
        Turn arguments into command-line strings.

        Dataset inputs become their ``name:version`` id and are also returned
        as the run's named input datasets.

        Returns:
            Tuple of (arguments, input datasets by name)
        """
        from mlstudio.data.dataset import DatasetConsumptionConfig

        resolved: List[str] = []
        inputs: Dict[str, str] = {}

        for argument in self.arguments + list(extra or []):
            if isinstance(argument, DatasetConsumptionConfig):
                inputs[argument.name] = argument.dataset_id
                resolved.append(argument.dataset_id)
            elif isinstance(argument, bool):
                resolved.append(str(argument))
            elif isinstance(argument, (str, int, float)):
                resolved.append(str(argument))
            else:
                raise ValidationError(
                    f"Unsupported argument type {type(argument).__name__} in run arguments"
                )

        return resolved, inputs

    def _create_run(
        self,
        experiment,
        tags: Optional[Dict[str, str]] = None,
        parent=None,
        run_id: Optional[str] = None,
        run_type: str = "script",
        display_name: Optional[str] = None,
        extra_arguments: Optional[List[Any]] = None,
        hyperparameters: Optional[Dict[str, Any]] = None,
        input_datasets: Optional[Dict[str, str]] = None
    ):
        """Persist the run record and move it to Queued."""
        from mlstudio.training.run import Run

        arguments, inputs = self.resolve_arguments(extra_arguments)
        inputs.update(input_datasets or {})

        run = Run._create(
            experiment,
            run_type,
            display_name=display_name,
            parent=parent,
            tags=tags,
            run_id=run_id,
            compute_target=self.compute_target_name,
            script=self.script,
            arguments=arguments,
            input_datasets=inputs,
            hyperparameters=hyperparameters or {},
        )
        run._set_status(RunStatus.QUEUED)
        return run

    def _submit(self, experiment, tags: Optional[Dict[str, str]] = None, **kwargs):
        """Queue the run and execute it on a background thread."""
        from mlstudio.training.job_runner import ScriptJobRunner

        run = self._create_run(experiment, tags=tags, **kwargs)
        ScriptJobRunner(run, self).start()
        return run
