"""Studio API endpoints: read access to workspace assets and run submission"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from mlstudio.api.models import (
    ComputeResponse,
    DatasetResponse,
    ExperimentResponse,
    ModelResponse,
    PipelineSubmitRequest,
    PublishedPipelineResponse,
    RunResponse,
    RunSubmittedResponse,
    WorkspaceResponse,
)
from mlstudio.compute.target import ComputeTarget
from mlstudio.config import settings
from mlstudio.data.dataset import Dataset
from mlstudio.pipelines.published import PublishedPipeline
from mlstudio.registry.model import Model
from mlstudio.training.experiment import Experiment
from mlstudio.training.run import Run
from mlstudio.workspace.workspace import Workspace

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Studio"])

# Workspace served by the API (resolved on first use)
_workspace: Optional[Workspace] = None


def set_workspace(workspace: Optional[Workspace]) -> None:
    """Serve the given workspace instead of the configured one"""
    global _workspace
    _workspace = workspace


def get_workspace() -> Workspace:
    """
    Dependency returning the served workspace.

    Uses ``API_WORKSPACE_NAME``/``API_WORKSPACE_PATH`` when set, otherwise
    the nearest workspace config file.
    """
    global _workspace
    if _workspace is None:
        if settings.api.workspace_name:
            _workspace = Workspace.get(settings.api.workspace_name, settings.api.workspace_path)
        else:
            _workspace = Workspace.from_config()
        logger.info(f"Serving workspace '{_workspace.name}'")
    return _workspace


def _dataset_response(record) -> DatasetResponse:
    data = record.model_dump(mode="json")
    data["id"] = record.id
    return DatasetResponse(**data)


def _compute_response(target: ComputeTarget) -> ComputeResponse:
    data: Dict[str, Any] = target.record.model_dump(mode="json")
    data.update(target.cluster.get_status())
    return ComputeResponse(**data)


def _model_response(model: Model) -> ModelResponse:
    return ModelResponse(**model.serialize())


def _pipeline_response(pipeline: PublishedPipeline) -> PublishedPipelineResponse:
    record = pipeline.to_dict()
    return PublishedPipelineResponse(
        pipeline_id=record["pipeline_id"],
        name=record["name"],
        description=record["description"],
        version=record["version"],
        status=record["status"],
        parameters=record["parameters"],
        steps=[step["name"] for step in record["graph"]["steps"]],
    )


# ============================================================================
# Workspace, datasets and compute
# ============================================================================

@router.get("/workspace", response_model=WorkspaceResponse, summary="Workspace details")
def get_workspace_details(workspace: Workspace = Depends(get_workspace)) -> WorkspaceResponse:
    return WorkspaceResponse(**workspace.get_details())


@router.get("/datasets", response_model=List[DatasetResponse], summary="Latest version of every dataset")
def list_datasets(workspace: Workspace = Depends(get_workspace)) -> List[DatasetResponse]:
    return [_dataset_response(record) for record in Dataset.list(workspace)]


@router.get("/datasets/{name}", response_model=DatasetResponse, summary="One dataset version")
def get_dataset(
    name: str,
    version: Optional[int] = None,
    workspace: Workspace = Depends(get_workspace)
) -> DatasetResponse:
    dataset = Dataset.get_by_name(workspace, name, version if version is not None else "latest")
    return _dataset_response(dataset.record)


@router.get("/computes", response_model=List[ComputeResponse], summary="Compute targets")
def list_computes(workspace: Workspace = Depends(get_workspace)) -> List[ComputeResponse]:
    return [_compute_response(target) for target in ComputeTarget.list(workspace)]


@router.get("/computes/{name}", response_model=ComputeResponse, summary="One compute target")
def get_compute(name: str, workspace: Workspace = Depends(get_workspace)) -> ComputeResponse:
    return _compute_response(ComputeTarget(workspace, name))


# ============================================================================
# Experiments and runs
# ============================================================================

@router.get("/experiments", response_model=List[ExperimentResponse], summary="Experiments")
def list_experiments(workspace: Workspace = Depends(get_workspace)) -> List[ExperimentResponse]:
    experiments = []
    for experiment in Experiment.list(workspace):
        entries = workspace.metadata.read_lines(f"experiments/{experiment.name}/runs.jsonl")
        experiments.append(ExperimentResponse(
            name=experiment.name,
            tags=experiment.tags,
            run_count=sum(1 for e in entries if not e.get("parent_run_id")),
        ))
    return experiments


@router.get(
    "/experiments/{name}/runs",
    response_model=List[RunResponse],
    summary="Top-level runs of an experiment, newest first"
)
def list_experiment_runs(
    name: str,
    run_type: Optional[str] = None,
    include_children: bool = False,
    workspace: Workspace = Depends(get_workspace)
) -> List[RunResponse]:
    experiment = Experiment(workspace, name)
    if not experiment.exists:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Experiment '{name}' not found")
    runs = experiment.get_runs(type=run_type, include_children=include_children)
    return [RunResponse(**run.get_details()) for run in runs]


@router.get("/runs/{run_id}", response_model=RunResponse, summary="Run details")
def get_run(run_id: str, workspace: Workspace = Depends(get_workspace)) -> RunResponse:
    return RunResponse(**Run.get(workspace, run_id).get_details())


@router.get("/runs/{run_id}/metrics", summary="Metrics logged by a run")
def get_run_metrics(run_id: str, workspace: Workspace = Depends(get_workspace)) -> Dict[str, Any]:
    return Run.get(workspace, run_id).get_metrics()


@router.get("/runs/{run_id}/children", response_model=List[RunResponse], summary="Child runs")
def get_run_children(run_id: str, workspace: Workspace = Depends(get_workspace)) -> List[RunResponse]:
    return [RunResponse(**child.get_details()) for child in Run.get(workspace, run_id).get_children()]


@router.get("/runs/{run_id}/files", summary="Artifact names of a run")
def get_run_files(run_id: str, workspace: Workspace = Depends(get_workspace)) -> List[str]:
    return Run.get(workspace, run_id).get_file_names()


@router.post("/runs/{run_id}/cancel", response_model=RunResponse, summary="Request cancellation")
def cancel_run(run_id: str, workspace: Workspace = Depends(get_workspace)) -> RunResponse:
    run = Run.get(workspace, run_id)
    run.cancel()
    logger.info(f"Cancellation of run {run_id} requested through the API")
    return RunResponse(**run.get_details())


# ============================================================================
# Models
# ============================================================================

@router.get("/models", response_model=List[ModelResponse], summary="Registered model versions")
def list_models(
    name: Optional[str] = None,
    latest: bool = False,
    workspace: Workspace = Depends(get_workspace)
) -> List[ModelResponse]:
    return [_model_response(model) for model in Model.list(workspace, name=name, latest=latest)]


@router.get("/models/{name}", response_model=ModelResponse, summary="One model version (latest by default)")
def get_model(
    name: str,
    version: Optional[int] = None,
    workspace: Workspace = Depends(get_workspace)
) -> ModelResponse:
    return _model_response(Model(workspace, name, version))


# ============================================================================
# Published pipelines
# ============================================================================

@router.get("/pipelines", response_model=List[PublishedPipelineResponse], summary="Published pipelines")
def list_pipelines(
    active_only: bool = True,
    workspace: Workspace = Depends(get_workspace)
) -> List[PublishedPipelineResponse]:
    return [_pipeline_response(p) for p in PublishedPipeline.list(workspace, active_only=active_only)]


@router.get("/pipelines/{pipeline_id}", response_model=PublishedPipelineResponse, summary="One published pipeline")
def get_pipeline(pipeline_id: str, workspace: Workspace = Depends(get_workspace)) -> PublishedPipelineResponse:
    return _pipeline_response(PublishedPipeline.get(workspace, pipeline_id))


@router.post(
    "/pipelines/{pipeline_id}/submit",
    response_model=RunSubmittedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a run of a published pipeline"
)
def submit_pipeline(
    pipeline_id: str,
    request: PipelineSubmitRequest,
    workspace: Workspace = Depends(get_workspace)
) -> RunSubmittedResponse:
    pipeline = PublishedPipeline.get(workspace, pipeline_id)
    run = pipeline.submit(workspace, request.experiment_name, pipeline_parameters=request.pipeline_parameters)
    logger.info(f"Submitted published pipeline {pipeline_id} as run {run.id}")
    return RunSubmittedResponse(run_id=run.id, status=run.status)
