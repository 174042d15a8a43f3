"""Pipeline steps."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from mlstudio.data.dataset import Dataset, DatasetConsumptionConfig
from mlstudio.exceptions import PipelineValidationError
from mlstudio.pipelines.data import PipelineData, PipelineParameter
from mlstudio.training.environment import Environment

logger = logging.getLogger(__name__)


class PythonScriptStep:
    """
    A step that runs a Python script as a child run of the pipeline.

    Args:
        script_name: Entry point relative to ``source_directory``
        name: Step name, unique within the pipeline
        source_directory: Directory snapshotted for the step
        arguments: Script arguments; may contain PipelineData, PipelineParameter
            and dataset inputs
        inputs: PipelineData or dataset inputs the step reads
        outputs: PipelineData the step writes
        compute_target: Compute target name or object
        environment: Environment the script runs in
        allow_reuse: Reuse a previous identical run of this step
    """

    def __init__(
        self,
        script_name: str,
        name: Optional[str] = None,
        source_directory: Optional[str] = None,
        arguments: Optional[List[Any]] = None,
        inputs: Optional[List[Any]] = None,
        outputs: Optional[List[PipelineData]] = None,
        compute_target="local",
        environment: Optional[Environment] = None,
        allow_reuse: bool = True
    ):
        self.script_name = script_name
        self.name = name or Path(script_name).stem
        self.source_directory = str(Path(source_directory or ".").resolve())
        self.arguments = list(arguments or [])
        self.inputs = list(inputs or [])
        self.outputs = list(outputs or [])
        self.compute_target = compute_target
        self.environment = environment
        self.allow_reuse = allow_reuse
        self._run_after: List["PythonScriptStep"] = []

        for output in self.outputs:
            if not isinstance(output, PipelineData):
                raise PipelineValidationError(f"Outputs of step '{self.name}' must be PipelineData")
        for item in self.inputs:
            if not isinstance(item, (PipelineData, DatasetConsumptionConfig)):
                raise PipelineValidationError(
                    f"Inputs of step '{self.name}' must be PipelineData or dataset inputs"
                )

    def __repr__(self) -> str:
        return f"PythonScriptStep(name={self.name!r}, script_name={self.script_name!r})"

    def run_after(self, step: "PythonScriptStep") -> None:
        """Run this step only after ``step`` has completed."""
        self._run_after.append(step)

    @property
    def compute_target_name(self) -> str:
        target = self.compute_target
        return target if isinstance(target, str) else target.name

    @property
    def input_data(self) -> List[PipelineData]:
        return [i for i in self.inputs if isinstance(i, PipelineData)]

    @property
    def dataset_inputs(self) -> List[DatasetConsumptionConfig]:
        return [i for i in self.inputs if isinstance(i, DatasetConsumptionConfig)]

    def parameters(self) -> List[PipelineParameter]:
        return [a for a in self.arguments if isinstance(a, PipelineParameter)]

    def to_dict(self) -> Dict[str, Any]:
        """Serializable description used when publishing."""
        return {
            "name": self.name,
            "script_name": self.script_name,
            "source_directory": self.source_directory,
            "arguments": [_encode(a) for a in self.arguments],
            "inputs": [_encode(i) for i in self.inputs],
            "outputs": [o.name for o in self.outputs],
            "compute_target": self.compute_target_name,
            "environment": self.environment.to_dict() if self.environment else None,
            "allow_reuse": self.allow_reuse,
            "run_after": [s.name for s in self._run_after],
        }


def _encode(value: Any) -> Any:
    if isinstance(value, (PipelineData, PipelineParameter)):
        return value.to_dict()
    if isinstance(value, DatasetConsumptionConfig):
        return {"type": "dataset", "name": value.name, "dataset_id": value.dataset_id}
    return value


def steps_from_dicts(workspace, documents: List[Dict[str, Any]]) -> List[PythonScriptStep]:
    """Rebuild steps from their published descriptions, sharing PipelineData objects by name."""
    data: Dict[str, PipelineData] = {}
    parameters: Dict[str, PipelineParameter] = {}

    def decode(value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        if value["type"] == "data":
            return data.setdefault(value["name"], PipelineData(value["name"]))
        if value["type"] == "parameter":
            return parameters.setdefault(
                value["name"], PipelineParameter(value["name"], value["default_value"])
            )
        if value["type"] == "dataset":
            return Dataset.get_by_id(workspace, value["dataset_id"]).as_named_input(value["name"])
        raise PipelineValidationError(f"Unknown argument type '{value['type']}'")

    steps: Dict[str, PythonScriptStep] = {}
    for document in documents:
        steps[document["name"]] = PythonScriptStep(
            script_name=document["script_name"],
            name=document["name"],
            source_directory=document["source_directory"],
            arguments=[decode(a) for a in document["arguments"]],
            inputs=[decode(i) for i in document["inputs"]],
            outputs=[decode({"type": "data", "name": o}) for o in document["outputs"]],
            compute_target=document["compute_target"],
            environment=Environment.from_dict(document["environment"]),
            allow_reuse=document["allow_reuse"],
        )
    for document in documents:
        for dependency in document["run_after"]:
            steps[document["name"]].run_after(steps[dependency])

    return list(steps.values())
