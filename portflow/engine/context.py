"""
Execution Context for Workflow Runs.

A WorkflowRun is the per-run mutable state: the outputs produced so far
(keyed ``"<nodeId>.<portId>"``), the run status and the error slot. Only
the graph walker mutates it while the run is in flight.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import uuid


class RunStatus(str, Enum):
    """Status of a workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepStatus(str, Enum):
    """Outcome of a single node execution."""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class CancellationToken:
    """
    Cooperative cancellation signal shared by a run and its plugins.

    Long-running plugins may poll ``cancelled`` or await ``wait()``; the
    walker also interrupts in-flight ``run`` calls when it is set.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StepLogEntry:
    """A log line attached to a step result."""
    message: str
    level: str = "info"  # info | warning | error | debug
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }


@dataclass
class StepExecutionResult:
    """The record of one node execution, handed to step sinks."""
    node_id: str
    status: StepStatus
    started_at: datetime
    node_type: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    attempts: int = 0
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    logs: List[StepLogEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "error": self.error,
            "logs": [entry.to_dict() for entry in self.logs],
        }


class RunError(BaseModel):
    """Terminal error of a run."""
    node_id: Optional[str] = None
    message: str
    details: Optional[Any] = None


def output_key(node_id: str, port_id: str) -> str:
    """Context data key for an output port of a node."""
    return f"{node_id}.{port_id}"


class WorkflowRun(BaseModel):
    """
    One execution instance of a workflow definition.

    Attributes:
        id: Run identifier (uuid4)
        workflow_definition_id: Id of the definition being executed
        status: Current run status
        current_step_id: Node being executed (or last executed)
        context_data: Outputs produced so far, keyed "<nodeId>.<portId>"
        error: Terminal error, if the run failed or was cancelled
        executed_nodes: Node ids in the order they finished executing
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_definition_id: str
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    current_step_id: Optional[str] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[RunError] = None
    executed_nodes: List[str] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def has_output(self, node_id: str, port_id: str) -> bool:
        return output_key(node_id, port_id) in self.context_data

    def get_output(self, node_id: str, port_id: str, default: Any = None) -> Any:
        """Get a value produced by a node's output port."""
        return self.context_data.get(output_key(node_id, port_id), default)

    def store_outputs(self, node_id: str, outputs: Dict[str, Any]) -> None:
        """Write every output of a node into the context data."""
        for port_id, value in outputs.items():
            self.context_data[output_key(node_id, port_id)] = value

    def fail(
        self,
        message: str,
        node_id: Optional[str] = None,
        details: Optional[Any] = None,
        status: RunStatus = RunStatus.FAILED,
    ) -> None:
        """Record a terminal error; the first error recorded wins."""
        if self.error is None:
            self.error = RunError(node_id=node_id, message=message, details=details)
        if not self.is_finished:
            self.status = status

    def finalize(self) -> "WorkflowRun":
        """Settle the final status once no more work remains."""
        if self.status == RunStatus.RUNNING:
            self.status = RunStatus.COMPLETED
        self.completed_at = datetime.now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert the run to a plain dictionary."""
        return {
            "id": self.id,
            "workflow_definition_id": self.workflow_definition_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "current_step_id": self.current_step_id,
            "context_data": self.context_data,
            "error": self.error.model_dump() if self.error else None,
            "executed_nodes": self.executed_nodes,
        }
