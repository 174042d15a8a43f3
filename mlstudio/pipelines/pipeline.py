"""Pipeline definition: steps, validation and ordering."""

import hashlib
import json
import logging
import threading
from typing import Any, Dict, List, Optional

from mlstudio.exceptions import PipelineValidationError
from mlstudio.pipelines.data import PipelineData, PipelineParameter
from mlstudio.pipelines.steps import PythonScriptStep
from mlstudio.workspace.models import RunStatus

logger = logging.getLogger(__name__)


def hash_payload(payload: Dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class Pipeline:
    """
    A set of steps connected by the data they produce and consume.

    Args:
        workspace: Workspace the pipeline runs in
        steps: Steps; steps they depend on need not be listed first
        description: Free text description
    """

    def __init__(self, workspace, steps: List[PythonScriptStep], description: Optional[str] = None):
        self.workspace = workspace
        self.steps = list(steps)
        self.description = description

    def __repr__(self) -> str:
        return f"Pipeline(steps={[s.name for s in self.steps]!r})"

    def validate(self) -> List[PythonScriptStep]:
        """
        Check the graph and return the steps in execution order.

        Raises:
            PipelineValidationError: On duplicate step names, data with zero or
                several producers, undeclared data arguments or a cycle
        """
        if not self.steps:
            raise PipelineValidationError("A pipeline needs at least one step")

        names = set()
        for step in self.steps:
            if step.name in names:
                raise PipelineValidationError(f"Duplicate step name '{step.name}'")
            names.add(step.name)

        producers: Dict[str, PythonScriptStep] = {}
        for step in self.steps:
            for output in step.outputs:
                if output.name in producers:
                    raise PipelineValidationError(
                        f"PipelineData '{output.name}' is produced by both "
                        f"'{producers[output.name].name}' and '{step.name}'"
                    )
                producers[output.name] = step

        for step in self.steps:
            for data in step.input_data:
                if data.name not in producers:
                    raise PipelineValidationError(
                        f"Step '{step.name}' consumes PipelineData '{data.name}' that no step produces"
                    )
                if producers[data.name] is step:
                    raise PipelineValidationError(f"Step '{step.name}' consumes its own output '{data.name}'")
            declared = {d.name for d in step.input_data} | {d.name for d in step.outputs}
            for argument in step.arguments:
                if isinstance(argument, PipelineData) and argument.name not in declared:
                    raise PipelineValidationError(
                        f"Argument '{argument.name}' of step '{step.name}' must be declared as an input or output"
                    )
            for dependency in step._run_after:
                if dependency.name not in names:
                    raise PipelineValidationError(
                        f"Step '{step.name}' runs after '{dependency.name}', which is not in the pipeline"
                    )

        parameters: Dict[str, PipelineParameter] = {}
        for step in self.steps:
            for parameter in step.parameters():
                known = parameters.setdefault(parameter.name, parameter)
                if known.default_value != parameter.default_value:
                    raise PipelineValidationError(
                        f"Pipeline parameter '{parameter.name}' has conflicting defaults"
                    )

        return self._topological_order(producers)

    def dependencies(self, step: PythonScriptStep, producers: Optional[Dict[str, PythonScriptStep]] = None) -> List[PythonScriptStep]:
        """Steps that must finish before ``step`` starts."""
        if producers is None:
            producers = {o.name: s for s in self.steps for o in s.outputs}
        upstream = [producers[d.name] for d in step.input_data]
        upstream.extend(step._run_after)
        unique: List[PythonScriptStep] = []
        for dependency in upstream:
            if dependency not in unique:
                unique.append(dependency)
        return unique

    def _topological_order(self, producers: Dict[str, PythonScriptStep]) -> List[PythonScriptStep]:
        ordered: List[PythonScriptStep] = []
        temporary = set()
        permanent = set()

        def visit(step: PythonScriptStep) -> None:
            if step.name in permanent:
                return
            if step.name in temporary:
                raise PipelineValidationError(f"Cycle detected involving step '{step.name}'")
            temporary.add(step.name)
            for dependency in self.dependencies(step, producers):
                visit(dependency)
            temporary.remove(step.name)
            permanent.add(step.name)
            ordered.append(step)

        for step in self.steps:
            visit(step)
        return ordered

    @property
    def parameters(self) -> Dict[str, Any]:
        """Default value of every pipeline parameter."""
        return {p.name: p.default_value for s in self.steps for p in s.parameters()}

    def graph(self) -> Dict[str, Any]:
        """Serializable description of the steps, in execution order."""
        return {
            "description": self.description,
            "steps": [step.to_dict() for step in self.validate()],
        }

    @classmethod
    def from_graph(cls, workspace, graph: Dict[str, Any]) -> "Pipeline":
        from mlstudio.pipelines.steps import steps_from_dicts
        return cls(workspace, steps_from_dicts(workspace, graph["steps"]), description=graph.get("description"))

    def publish(self, name: str, description: Optional[str] = None, version: Optional[str] = None):
        """
        Persist the pipeline so it can be submitted later by id.

        Returns:
            PublishedPipeline
        """
        from mlstudio.pipelines.published import PublishedPipeline
        return PublishedPipeline.create(self, name, description=description or self.description, version=version)

    def submit(self, experiment_name: str, pipeline_parameters: Optional[Dict[str, Any]] = None, **kwargs):
        """Submit under the named experiment."""
        from mlstudio.training.experiment import Experiment
        return Experiment(self.workspace, experiment_name).submit(
            self, pipeline_parameters=pipeline_parameters, **kwargs
        )

    def _submit(
        self,
        experiment,
        tags: Optional[Dict[str, str]] = None,
        pipeline_parameters: Optional[Dict[str, Any]] = None,
        regenerate_outputs: bool = False,
        display_name: Optional[str] = None,
        published_pipeline_id: Optional[str] = None
    ):
        """Create the pipeline run and execute its steps on a background thread."""
        from mlstudio.pipelines.run import PipelineExecutor, PipelineRun

        order = self.validate()
        values = self.resolve_parameters(pipeline_parameters)

        properties: Dict[str, Any] = {"pipeline_parameters": json.dumps(values, sort_keys=True)}
        if published_pipeline_id:
            properties["published_pipeline_id"] = published_pipeline_id

        run = PipelineRun._create(
            experiment,
            "pipeline",
            display_name=display_name,
            tags=tags,
            properties=properties,
        )
        run._set_status(RunStatus.QUEUED)

        executor = PipelineExecutor(self, run, order, values, regenerate_outputs=regenerate_outputs)
        thread = threading.Thread(target=executor.execute, name=f"pipeline-{run.id}", daemon=True)
        thread.start()
        return run

    def resolve_parameters(self, values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Merge submitted values over parameter defaults.

        Raises:
            PipelineValidationError: For names that are not pipeline parameters
        """
        resolved = self.parameters
        unknown = sorted(set(values or {}) - set(resolved))
        if unknown:
            raise PipelineValidationError(f"Unknown pipeline parameters: {unknown}")
        resolved.update(values or {})
        return resolved
