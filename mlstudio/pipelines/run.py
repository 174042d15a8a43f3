"""Pipeline execution and the pipeline run handle."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from mlstudio.config import settings
from mlstudio.data.dataset import DatasetConsumptionConfig
from mlstudio.exceptions import RunNotFoundError
from mlstudio.pipelines.data import PipelineData, PipelineParameter
from mlstudio.pipelines.pipeline import hash_payload
from mlstudio.training.job_runner import ScriptJobRunner
from mlstudio.training.run import Run
from mlstudio.training.script_run_config import ScriptRunConfig
from mlstudio.workspace.models import RunStatus

logger = logging.getLogger(__name__)


class PipelineExecutor:
    """
    Runs the steps of one pipeline run in dependency order.

    Each step becomes a child run of type ``step``. A step whose reuse key
    matches a completed earlier step run is not executed; its outputs are
    taken from that run. When a step fails, the steps that depend on it are
    canceled and the pipeline run fails once the remaining steps finish.
    """

    def __init__(self, pipeline, run: "PipelineRun", order: List[Any], values: Dict[str, Any],
                 regenerate_outputs: bool = False):
        self.pipeline = pipeline
        self.run = run
        self.order = order
        self.values = values
        self.regenerate_outputs = regenerate_outputs
        self.workspace = run.workspace
        self.poll_interval = settings.run.poll_interval_seconds
        self.locations: Dict[str, str] = {}
        self.reuse_keys: Dict[str, str] = {}

    def execute(self) -> RunStatus:
        try:
            self._execute()
        except Exception as e:
            logger.exception(f"Pipeline run {self.run.id} failed unexpectedly")
            self.run._set_status(
                RunStatus.FAILED, error={"code": "SystemError", "message": f"{type(e).__name__}: {e}"}
            )
        return RunStatus(self.run.status)

    def _execute(self) -> None:
        run = self.run
        run._set_status(RunStatus.RUNNING)

        failed: List[str] = []
        blocked: Set[str] = set()
        canceled = False

        for index, step in enumerate(self.order):
            if not canceled and run.cancel_requested:
                logger.info(f"Pipeline run {run.id} canceled before step '{step.name}'")
                canceled = True

            upstream = [d.name for d in self.pipeline.dependencies(step) if d.name in blocked]
            if canceled or upstream:
                self._skip_step(index, step)
                blocked.add(step.name)
                continue

            status = self._run_step(index, step)
            if status != RunStatus.COMPLETED:
                blocked.add(step.name)
                if status == RunStatus.FAILED:
                    failed.append(step.name)
                elif run.cancel_requested:
                    canceled = True

        if canceled:
            run._set_status(RunStatus.CANCELED)
        elif blocked:
            run._set_status(
                RunStatus.FAILED,
                error={
                    "code": "StepFailed",
                    "message": f"Step(s) failed: {', '.join(failed) or 'none'}; "
                               f"not completed: {', '.join(sorted(blocked))}",
                }
            )
        else:
            run._set_status(RunStatus.COMPLETED)

    def _step_run_id(self, index: int) -> str:
        return f"{self.run.id}_{index}"

    def _data_dir(self, run_id: str, name: str) -> Path:
        storage = self.workspace.storage
        return storage.local_path(storage.uri_for(f"runs/{run_id}/pipeline_data/{name}"))

    def _skip_step(self, index: int, step) -> None:
        child = Run._create(
            self.run.experiment,
            "step",
            display_name=step.name,
            parent=self.run,
            run_id=self._step_run_id(index),
            script=step.script_name,
            compute_target=step.compute_target_name,
        )
        child._set_status(RunStatus.CANCELED)
        logger.info(f"Step '{step.name}' canceled: an upstream step did not complete")

    def _encode_argument(self, argument: Any) -> Any:
        if isinstance(argument, PipelineData):
            return f"data:{argument.name}"
        if isinstance(argument, PipelineParameter):
            return self.values[argument.name]
        if isinstance(argument, DatasetConsumptionConfig):
            return f"dataset:{argument.dataset_id}"
        return argument

    def reuse_key(self, step) -> str:
        """Hash of everything that determines a step's outputs."""
        producers = {o.name: s for s in self.pipeline.steps for o in s.outputs}
        payload = {
            "snapshot": self.workspace.storage.compute_hash(f"file://{step.source_directory}"),
            "script": step.script_name,
            "arguments": [self._encode_argument(a) for a in step.arguments],
            "inputs": {d.name: self.reuse_keys[producers[d.name].name] for d in step.input_data},
            "outputs": sorted(o.name for o in step.outputs),
            "datasets": sorted(d.dataset_id for d in step.dataset_inputs),
            "environment": step.environment.to_dict() if step.environment else None,
        }
        return hash_payload(payload)

    def _try_reuse(self, index: int, step, key: str) -> bool:
        previous = self.workspace.metadata.read(f"pipelines/reuse/{key}.json")
        if previous is None:
            return False
        try:
            source = Run.get(self.workspace, previous["step_run_id"])
        except RunNotFoundError as e:
            logger.warning(f"Cannot reuse step run {previous['step_run_id']}: {e}")
            return False
        if source.status != RunStatus.COMPLETED.value:
            return False
        if not all(Path(path).is_dir() for path in previous["outputs"].values()):
            return False

        child = Run._create(
            self.run.experiment,
            "step",
            display_name=step.name,
            parent=self.run,
            run_id=self._step_run_id(index),
            script=step.script_name,
            compute_target=step.compute_target_name,
            properties={"reuse_key": key, "reused_from": source.id},
        )
        child._set_status(RunStatus.COMPLETED)
        self.locations.update(previous["outputs"])
        logger.info(f"Step '{step.name}' reused outputs of {source.id}")
        return True

    def _resolve_argument(self, argument: Any, outputs: Dict[str, str]) -> Any:
        if isinstance(argument, PipelineData):
            return outputs.get(argument.name) or self.locations[argument.name]
        if isinstance(argument, PipelineParameter):
            return self.values[argument.name]
        return argument

    def _run_step(self, index: int, step) -> RunStatus:
        key = self.reuse_key(step)
        self.reuse_keys[step.name] = key

        if step.allow_reuse and not self.regenerate_outputs and self._try_reuse(index, step, key):
            return RunStatus.COMPLETED

        run_id = self._step_run_id(index)
        outputs = {o.name: str(self._data_dir(run_id, o.name)) for o in step.outputs}
        for path in outputs.values():
            Path(path).mkdir(parents=True, exist_ok=True)

        config = ScriptRunConfig(
            source_directory=step.source_directory,
            script=step.script_name,
            arguments=[self._resolve_argument(a, outputs) for a in step.arguments],
            compute_target=step.compute_target,
            environment=step.environment,
        )
        child = config._create_run(
            self.run.experiment,
            parent=self.run,
            run_id=run_id,
            run_type="step",
            display_name=step.name,
            input_datasets={d.name: d.dataset_id for d in step.dataset_inputs},
        )
        child.add_properties({"reuse_key": key})

        logger.info(f"Pipeline run {self.run.id}: starting step '{step.name}' as {child.id}")
        thread = ScriptJobRunner(child, config).start()
        cancel_sent = False
        while thread.is_alive():
            if not cancel_sent and self.run.cancel_requested:
                child.cancel()
                cancel_sent = True
            thread.join(self.poll_interval)

        status = RunStatus(child.status)
        if status == RunStatus.COMPLETED:
            self.locations.update(outputs)
            self.workspace.metadata.write(
                f"pipelines/reuse/{key}.json",
                {"step_run_id": child.id, "pipeline_run_id": self.run.id, "outputs": outputs}
            )
        logger.info(f"Step '{step.name}' finished: {status.value}")
        return status


class PipelineRun(Run):
    """Run of a pipeline; its children are the step runs."""

    def get_steps(self) -> List["StepRun"]:
        return self.get_children()

    def find_step_run(self, name: str) -> List["StepRun"]:
        """Step runs with the given step name."""
        return [step for step in self.get_steps() if step.display_name == name]

    @property
    def pipeline_parameters(self) -> Dict[str, Any]:
        return json.loads(self.get_properties().get("pipeline_parameters", "{}"))

    @property
    def published_pipeline_id(self) -> Optional[str]:
        return self.get_properties().get("published_pipeline_id")


class StepRun(Run):
    """Child run executing (or reusing) one pipeline step."""

    @property
    def step_name(self) -> Optional[str]:
        return self.display_name

    @property
    def reused_from(self) -> Optional[str]:
        return self.get_properties().get("reused_from")

    def get_output_data(self, name: str) -> Path:
        """
        Folder holding the step's ``PipelineData`` output ``name``.

        A reused step resolves to the folder of the run it reused.

        Raises:
            FileNotFoundError: If the step produced no such output
        """
        if self.reused_from:
            return Run.get(self.workspace, self.reused_from).get_output_data(name)
        path = self.artifact_local_path(f"pipeline_data/{name}")
        if not path.is_dir():
            raise FileNotFoundError(f"Step run {self.id} has no output '{name}'")
        return path
