"""
Pydantic Schemas for API Request/Response Models.

Workflow definitions are accepted in the editor's own format
(``portflow.engine.models.WorkflowDefinition``); everything else that
crosses the API is described here.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from portflow.engine.context import RunStatus
from portflow.engine.models import WorkflowDefinition


# ============================================================
# Plugin Schemas
# ============================================================

class PortInfo(BaseModel):
    """A port of a plugin."""
    id: str
    name: str
    data_type: str
    description: str = ""


class ConfigFieldInfo(BaseModel):
    """A settings field of a plugin."""
    name: str
    label: str
    type: str
    options: List[Dict[str, str]] = Field(default_factory=list)
    placeholder: str = ""
    default_value: Any = None


class PluginInfo(BaseModel):
    """Information about a registered plugin."""
    id: str
    name: str
    description: str
    category: Optional[str]
    is_trigger: bool
    inputs: List[PortInfo]
    outputs: List[PortInfo]
    default_data: Dict[str, Any]
    config_fields: List[ConfigFieldInfo]
    retry: Optional[Dict[str, Any]] = None
    timeout_seconds: Optional[float] = None


class PluginListResponse(BaseModel):
    """Response listing registered plugins."""
    plugins: List[PluginInfo]
    total: int


class PluginRegisterResponse(BaseModel):
    """Response after registering a scripted plugin."""
    id: str
    message: str
    replaced: bool = False


# ============================================================
# Workflow Schemas
# ============================================================

class WorkflowCreateResponse(BaseModel):
    """Response after saving a workflow definition."""
    workflow_id: str = Field(..., description="Id of the saved definition")
    name: str
    message: str = Field(default="Workflow saved successfully")
    node_count: int
    warnings: List[str] = Field(
        default_factory=list,
        description="Connection problems found by the editor-side port check"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "workflow_id": "hello-demo",
                "name": "Hello Workflow",
                "message": "Workflow saved successfully",
                "node_count": 3,
                "warnings": []
            }
        }


class WorkflowInfoResponse(BaseModel):
    """Response with a saved workflow."""
    workflow_id: str
    name: str
    node_count: int
    edge_count: int
    trigger_nodes: List[str]
    created_at: str
    updated_at: str
    definition: Dict[str, Any]


class WorkflowListResponse(BaseModel):
    """Response listing saved workflows."""
    workflows: List[WorkflowInfoResponse]
    total: int


class WorkflowRunRequest(BaseModel):
    """Request to run a saved workflow."""
    payload: Any = Field(None, description="Trigger payload handed to the trigger node")
    trigger_node_id: Optional[str] = Field(
        None,
        description="Entry node; defaults to the first trigger node"
    )
    async_execution: bool = Field(
        False,
        description="If true, run in background and return immediately"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "payload": {"name": "Ada"},
                "trigger_node_id": None,
                "async_execution": False
            }
        }


class WorkflowExecuteRequest(BaseModel):
    """Request to run an unsaved workflow definition."""
    definition: WorkflowDefinition
    payload: Any = None
    trigger_node_id: Optional[str] = None


# ============================================================
# Run Schemas
# ============================================================

class RunErrorInfo(BaseModel):
    node_id: Optional[str] = None
    message: str
    details: Optional[Any] = None


class StepLogInfo(BaseModel):
    timestamp: str
    level: str
    message: str


class StepInfo(BaseModel):
    """One node execution."""
    node_id: str
    node_type: Optional[str]
    status: str
    started_at: str
    completed_at: Optional[str]
    duration_ms: Optional[float]
    attempts: int
    inputs: Dict[str, Any]
    outputs: Optional[Dict[str, Any]]
    error: Optional[str]
    logs: List[StepLogInfo]


class RunResponse(BaseModel):
    """State of a workflow run."""
    run_id: str = Field(..., description="Unique identifier for this run")
    workflow_id: str
    status: RunStatus
    started_at: str
    completed_at: Optional[str] = None
    current_step_id: Optional[str] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)
    executed_nodes: List[str] = Field(default_factory=list)
    error: Optional[RunErrorInfo] = None
    steps: List[StepInfo] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "run_id": "0b6f3c1e-4a61-4b43-9c55-2f1d0c8b7e21",
                "workflow_id": "hello-demo",
                "status": "completed",
                "started_at": "2024-01-01T12:00:00",
                "completed_at": "2024-01-01T12:00:01",
                "current_step_id": "adder",
                "context_data": {
                    "trigger.output": {"initial_value": 2},
                    "adder.sum_output": 2
                },
                "executed_nodes": ["trigger", "adder"],
                "error": None,
                "steps": []
            }
        }


class RunListResponse(BaseModel):
    """Response listing runs."""
    runs: List[RunResponse]
    total: int


class RunCancelResponse(BaseModel):
    run_id: str
    cancelled: bool
    message: str


# ============================================================
# Webhook Schemas
# ============================================================

class WebhookBindRequest(BaseModel):
    """Bind a webhook id to a saved workflow."""
    workflow_id: str = Field(..., description="Workflow started by the webhook")


class WebhookStatusResponse(BaseModel):
    webhook_id: str
    active: bool
    workflow_id: Optional[str] = None


class WebhookDispatchResponse(BaseModel):
    """Response once a webhook run has been scheduled."""
    webhook_id: str
    workflow_id: str
    run_id: str
    status: RunStatus
    message: str = "Workflow run scheduled"


# ============================================================
# Error Schemas
# ============================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int
