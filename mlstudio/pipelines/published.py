"""Published pipelines: stored pipeline graphs that can be submitted by id."""

import logging
import uuid
from typing import Any, Dict, List, Optional

from mlstudio.exceptions import PipelineNotFoundError, PipelineRunError
from mlstudio.workspace.models import PublishedPipelineRecord

logger = logging.getLogger(__name__)


def _key(pipeline_id: str) -> str:
    return f"pipelines/published/{pipeline_id}.json"


class PublishedPipeline:
    """
    A pipeline saved with its step graph.

    Step source directories are snapshotted at publish time, so later edits
    to the original scripts do not change the published pipeline.
    """

    def __init__(self, workspace, record: PublishedPipelineRecord):
        self.workspace = workspace
        self.id = record.pipeline_id
        self._cached = record

    def __repr__(self) -> str:
        return f"PublishedPipeline(id={self.id!r}, name={self.name!r}, status={self.status!r})"

    @property
    def _record(self) -> PublishedPipelineRecord:
        document = self.workspace.metadata.read(_key(self.id))
        if document is None:
            raise PipelineNotFoundError(f"Published pipeline '{self.id}' not found")
        return PublishedPipelineRecord(**document)

    @property
    def name(self) -> str:
        return self._cached.name

    @property
    def description(self) -> Optional[str]:
        return self._cached.description

    @property
    def version(self) -> Optional[str]:
        return self._cached.version

    @property
    def status(self) -> str:
        return self._record.status

    @property
    def parameters(self) -> Dict[str, Any]:
        return dict(self._cached.parameters)

    @classmethod
    def create(cls, pipeline, name: str, description: Optional[str] = None,
               version: Optional[str] = None) -> "PublishedPipeline":
        """Snapshot the steps of ``pipeline`` and persist the graph."""
        workspace = pipeline.workspace
        graph = pipeline.graph()
        pipeline_id = str(uuid.uuid4())

        for step in graph["steps"]:
            uri = workspace.storage.save_artifact_from_file(
                step["source_directory"], f"pipelines/{pipeline_id}/{step['name']}"
            )
            step["source_directory"] = str(workspace.storage.local_path(uri))

        record = PublishedPipelineRecord(
            pipeline_id=pipeline_id,
            name=name,
            description=description,
            version=version,
            graph=graph,
            parameters=pipeline.parameters,
        )
        workspace.metadata.write(_key(pipeline_id), record.model_dump(mode="json"))
        logger.info(f"Published pipeline '{name}' as {pipeline_id}")
        return cls(workspace, record)

    @classmethod
    def get(cls, workspace, id: str) -> "PublishedPipeline":
        """
        Raises:
            PipelineNotFoundError: If no pipeline has this id
        """
        document = workspace.metadata.read(_key(id))
        if document is None:
            raise PipelineNotFoundError(f"Published pipeline '{id}' not found", details={"pipeline_id": id})
        return cls(workspace, PublishedPipelineRecord(**document))

    @classmethod
    def list(cls, workspace, active_only: bool = True) -> List["PublishedPipeline"]:
        pipelines = [
            cls(workspace, PublishedPipelineRecord(**workspace.metadata.read(key)))
            for key in workspace.metadata.list("pipelines/published")
        ]
        if active_only:
            pipelines = [p for p in pipelines if p.status == "Active"]
        return sorted(pipelines, key=lambda p: p._cached.created_at)

    def _set_status(self, status: str) -> None:
        def mutate(document: Dict[str, Any]) -> Dict[str, Any]:
            document["status"] = status
            return document

        self.workspace.metadata.update(_key(self.id), mutate)
        logger.info(f"Published pipeline {self.id} -> {status}")

    def disable(self) -> None:
        self._set_status("Disabled")

    def enable(self) -> None:
        self._set_status("Active")

    def submit(self, workspace, experiment_name: str, pipeline_parameters: Optional[Dict[str, Any]] = None, **kwargs):
        """
        Start a run of the published graph.

        Raises:
            PipelineRunError: If the pipeline is disabled
        """
        from mlstudio.pipelines.pipeline import Pipeline
        from mlstudio.training.experiment import Experiment

        record = self._record
        if record.status != "Active":
            raise PipelineRunError(f"Published pipeline {self.id} is disabled")

        pipeline = Pipeline.from_graph(workspace, record.graph)
        return Experiment(workspace, experiment_name).submit(
            pipeline,
            pipeline_parameters=pipeline_parameters,
            published_pipeline_id=self.id,
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        return self._record.model_dump(mode="json")
