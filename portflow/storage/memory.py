"""
In-Memory Storage for the Workflow Engine.

Holds saved workflow definitions, the archive of finished runs with
their step logs, and the webhook bindings. Everything lives behind an
asyncio.Lock and can be swapped for a database implementation.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
import asyncio

from portflow.engine.context import StepExecutionResult, WorkflowRun
from portflow.engine.models import WorkflowDefinition


@dataclass
class StoredWorkflow:
    """A saved workflow definition."""
    workflow_id: str
    name: str
    definition: Dict[str, Any]
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_definition(self) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate(self.definition)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "definition": self.definition,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class StoredRun:
    """An archived run and the steps recorded for it."""
    run_id: str
    workflow_id: str
    run: Dict[str, Any] = field(default_factory=dict)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    archived_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.run,
            "steps": self.steps,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }


class WorkflowStorage:
    """
    In-memory storage for workflow definitions, keyed by definition id.

    Definitions are stored in their serialized (editor) form so a stored
    workflow can never be mutated through a live model object.
    """

    def __init__(self):
        self._workflows: Dict[str, StoredWorkflow] = {}
        self._lock = asyncio.Lock()

    async def save(self, definition: WorkflowDefinition) -> StoredWorkflow:
        """
        Save (or replace) a workflow definition.

        Args:
            definition: The workflow definition

        Returns:
            The stored workflow
        """
        async with self._lock:
            existing = self._workflows.get(definition.id)
            stored = StoredWorkflow(
                workflow_id=definition.id,
                name=definition.name,
                definition=definition.to_dict(),
            )
            if existing is not None:
                stored.created_at = existing.created_at
            self._workflows[definition.id] = stored
            return stored

    async def get(self, workflow_id: str) -> Optional[StoredWorkflow]:
        """Get a workflow by ID."""
        async with self._lock:
            return self._workflows.get(workflow_id)

    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow."""
        async with self._lock:
            if workflow_id in self._workflows:
                del self._workflows[workflow_id]
                return True
            return False

    async def list_all(self) -> List[StoredWorkflow]:
        """List all stored workflows."""
        async with self._lock:
            return list(self._workflows.values())

    async def exists(self, workflow_id: str) -> bool:
        async with self._lock:
            return workflow_id in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)


class RunArchive:
    """
    Log sink for workflow runs.

    ``record_step`` and ``archive`` have the step sink and run sink
    signatures of the RunSupervisor, so the app registers them directly.
    Steps can arrive while a run is still active; the run itself arrives
    once it has finished.
    """

    def __init__(self):
        self._runs: Dict[str, StoredRun] = {}
        self._lock = asyncio.Lock()

    async def record_step(self, run: WorkflowRun, step: StepExecutionResult) -> None:
        """Append a step result to the run's log."""
        async with self._lock:
            stored = self._entry(run)
            stored.steps.append(step.to_dict())

    async def archive(self, run: WorkflowRun) -> StoredRun:
        """Store the final state of a finished run."""
        async with self._lock:
            stored = self._entry(run)
            stored.run = run.to_dict()
            stored.archived_at = datetime.now()
            return stored

    async def get(self, run_id: str) -> Optional[StoredRun]:
        """Get an archived run by ID (None if it has not finished yet)."""
        async with self._lock:
            stored = self._runs.get(run_id)
            if stored is None or stored.archived_at is None:
                return None
            return stored

    async def get_steps(self, run_id: str) -> Optional[List[Dict[str, Any]]]:
        """Step log of a run, active or finished."""
        async with self._lock:
            stored = self._runs.get(run_id)
            return list(stored.steps) if stored else None

    async def list_all(self) -> List[StoredRun]:
        """List all archived runs."""
        async with self._lock:
            return [r for r in self._runs.values() if r.archived_at is not None]

    async def list_by_workflow(self, workflow_id: str) -> List[StoredRun]:
        """List archived runs of a specific workflow."""
        async with self._lock:
            return [
                r for r in self._runs.values()
                if r.archived_at is not None and r.workflow_id == workflow_id
            ]

    async def delete(self, run_id: str) -> bool:
        async with self._lock:
            if run_id in self._runs:
                del self._runs[run_id]
                return True
            return False

    def _entry(self, run: WorkflowRun) -> StoredRun:
        if run.id not in self._runs:
            self._runs[run.id] = StoredRun(
                run_id=run.id,
                workflow_id=run.workflow_definition_id,
            )
        return self._runs[run.id]

    def __len__(self) -> int:
        return len(self._runs)


class WebhookBindings:
    """
    Maps webhook ids to the workflow they start.

    A webhook is active while it is bound; binding an id again moves it to
    the new workflow.
    """

    def __init__(self):
        self._bindings: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def bind(self, webhook_id: str, workflow_id: str) -> None:
        async with self._lock:
            self._bindings[webhook_id] = workflow_id

    async def unbind(self, webhook_id: str) -> bool:
        async with self._lock:
            return self._bindings.pop(webhook_id, None) is not None

    async def get(self, webhook_id: str) -> Optional[str]:
        """Workflow id bound to the webhook, if any."""
        async with self._lock:
            return self._bindings.get(webhook_id)

    async def list_all(self) -> Dict[str, str]:
        async with self._lock:
            return dict(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)


# Global storage instances
workflow_storage = WorkflowStorage()
run_archive = RunArchive()
webhook_bindings = WebhookBindings()
