"""Pydantic models for the studio API"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error payload returned by every failing endpoint"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human readable message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Additional details")


class WorkspaceResponse(BaseModel):
    """Workspace details"""
    name: str
    description: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    created_at: str
    path: str


class DatasetResponse(BaseModel):
    """One registered dataset version"""
    id: str = Field(..., description="Dataset id in name:version form")
    name: str
    version: int
    description: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    num_rows: int
    num_columns: int
    data_schema: Dict[str, str] = Field(default_factory=dict)
    registered_at: str


class ComputeResponse(BaseModel):
    """Compute target and the live state of its nodes"""
    name: str
    compute_type: str
    vm_size: str
    provisioning_state: str
    min_nodes: int
    max_nodes: int
    current_node_count: int
    busy_node_count: int
    idle_node_count: int


class ExperimentResponse(BaseModel):
    """Experiment summary"""
    name: str
    tags: Dict[str, str] = Field(default_factory=dict)
    run_count: int


class RunResponse(BaseModel):
    """Run details"""
    run_id: str
    experiment_name: str
    run_type: str
    display_name: Optional[str] = None
    status: str
    parent_run_id: Optional[str] = None
    created_at: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    properties: Dict[str, Any] = Field(default_factory=dict)
    hyperparameters: Dict[str, Any] = Field(default_factory=dict)
    compute_target: Optional[str] = None
    script: Optional[str] = None
    arguments: List[str] = Field(default_factory=list)
    input_datasets: Dict[str, str] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None


class ModelResponse(BaseModel):
    """One registered model version"""
    id: str
    name: str
    version: int
    description: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    properties: Dict[str, str] = Field(default_factory=dict)
    run_id: Optional[str] = None
    experiment_name: Optional[str] = None
    datasets: List[str] = Field(default_factory=list)
    created_at: str


class PublishedPipelineResponse(BaseModel):
    """Published pipeline summary"""
    pipeline_id: str
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    status: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    steps: List[str] = Field(default_factory=list)


class PipelineSubmitRequest(BaseModel):
    """Request body for submitting a published pipeline"""
    experiment_name: str = Field(..., min_length=1, max_length=255, description="Experiment to run under")
    pipeline_parameters: Dict[str, Any] = Field(default_factory=dict, description="Parameter overrides")

    class Config:
        json_schema_extra = {
            "example": {
                "experiment_name": "nightly-training",
                "pipeline_parameters": {"learning_rate": 0.05}
            }
        }


class RunSubmittedResponse(BaseModel):
    """Identifies a newly submitted run"""
    run_id: str
    status: str
