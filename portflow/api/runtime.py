"""
Shared runtime objects for the HTTP app.

The supervisor executes every run started over HTTP. Its step and run
sinks feed the run archive, which keeps finished runs queryable after
the supervisor has evicted them.
"""

from typing import Any, Dict, List, Optional

from portflow.api.schemas import RunResponse, StepInfo
from portflow.config import settings
from portflow.engine.registry import plugin_registry
from portflow.engine.supervisor import RunSupervisor
from portflow.storage.memory import run_archive


supervisor = RunSupervisor(
    plugin_registry,
    node_timeout=settings.NODE_TIMEOUT_SECONDS,
    max_concurrency=settings.MAX_CONCURRENCY,
)
supervisor.add_step_sink(run_archive.record_step)
supervisor.add_run_sink(run_archive.archive)


def run_to_response(run: Dict[str, Any], steps: Optional[List[Dict[str, Any]]] = None) -> RunResponse:
    """Convert a serialized WorkflowRun (``WorkflowRun.to_dict``) to an API response."""
    return RunResponse(
        run_id=run["id"],
        workflow_id=run["workflow_definition_id"],
        status=run["status"],
        started_at=run["started_at"],
        completed_at=run.get("completed_at"),
        current_step_id=run.get("current_step_id"),
        context_data=run.get("context_data") or {},
        executed_nodes=run.get("executed_nodes") or [],
        error=run.get("error"),
        steps=[StepInfo(**step) for step in steps or []],
    )
