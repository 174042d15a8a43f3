"""Pydantic models for persisted workspace entities."""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Lifecycle states of a run."""

    NOT_STARTED = "NotStarted"
    QUEUED = "Queued"
    PREPARING = "Preparing"
    RUNNING = "Running"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELED = "Canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELED})

# Position of each non-terminal state; a run may only move forward.
STATUS_ORDER = {
    RunStatus.NOT_STARTED: 0,
    RunStatus.QUEUED: 1,
    RunStatus.PREPARING: 2,
    RunStatus.RUNNING: 3,
    RunStatus.FINALIZING: 4,
}


def is_valid_transition(current: RunStatus, new: RunStatus) -> bool:
    """Return True if a run may move from ``current`` to ``new``."""
    if current.is_terminal:
        return False
    if new.is_terminal:
        return True
    return STATUS_ORDER[new] > STATUS_ORDER[current]


class WorkspaceInfo(BaseModel):
    """Workspace model."""

    name: str
    description: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExperimentRecord(BaseModel):
    """Experiment model."""

    name: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    tags: Dict[str, str] = Field(default_factory=dict)


class RunRecord(BaseModel):
    """Run model."""

    run_id: str
    experiment_name: str
    run_type: str = Field(pattern="^(script|interactive|hyperdrive|automl|automl_iteration|pipeline|step)$")
    display_name: Optional[str] = None
    status: RunStatus = RunStatus.NOT_STARTED
    parent_run_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    properties: Dict[str, Any] = Field(default_factory=dict)
    hyperparameters: Dict[str, Any] = Field(default_factory=dict)
    compute_target: Optional[str] = None
    script: Optional[str] = None
    arguments: List[str] = Field(default_factory=list)
    input_datasets: Dict[str, str] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False


class MetricRecord(BaseModel):
    """A single logged metric value."""

    name: str
    value: Any
    kind: str = Field(default="scalar", pattern="^(scalar|list|row|table|image)$")
    step: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ComputeRecord(BaseModel):
    """Compute target model."""

    name: str
    compute_type: str = Field(default="AmlCompute", pattern="^(AmlCompute|Local)$")
    vm_size: str
    vm_priority: str = Field(default="dedicated", pattern="^(dedicated|lowpriority)$")
    min_nodes: int = Field(default=0, ge=0)
    max_nodes: int = Field(default=4, ge=1)
    idle_seconds_before_scaledown: int = Field(default=1800, ge=0)
    provisioning_state: str = "Creating"
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DatasetRecord(BaseModel):
    """Registered dataset version model."""

    name: str
    version: int
    description: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    source: Optional[str] = None
    content_hash: str
    storage_uri: str
    num_rows: int
    num_columns: int
    data_schema: Dict[str, str] = Field(default_factory=dict)
    statistics: Dict[str, Any] = Field(default_factory=dict)
    registered_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def id(self) -> str:
        return f"{self.name}:{self.version}"


class ModelRecord(BaseModel):
    """Registered model version model."""

    name: str
    version: int
    description: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    properties: Dict[str, str] = Field(default_factory=dict)
    storage_uri: str
    file_name: str
    run_id: Optional[str] = None
    experiment_name: Optional[str] = None
    datasets: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def id(self) -> str:
        return f"{self.name}:{self.version}"


class PublishedPipelineRecord(BaseModel):
    """Published pipeline model."""

    pipeline_id: str
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    status: str = Field(default="Active", pattern="^(Active|Disabled)$")
    graph: Dict[str, Any]
    parameters: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
