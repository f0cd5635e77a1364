"""
Workflow API Routes.

Endpoints for saving workflow definitions and starting runs.
"""

from fastapi import APIRouter, HTTPException, BackgroundTasks, status
import logging

from portflow.api.runtime import run_to_response, supervisor
from portflow.api.schemas import (
    ErrorResponse,
    RunResponse,
    WorkflowCreateResponse,
    WorkflowExecuteRequest,
    WorkflowInfoResponse,
    WorkflowListResponse,
    WorkflowRunRequest,
)
from portflow.engine.models import WorkflowDefinition
from portflow.engine.registry import plugin_registry
from portflow.storage.memory import StoredWorkflow, run_archive, workflow_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])


# ============================================================
# Definition CRUD Endpoints
# ============================================================

@router.post(
    "/",
    response_model=WorkflowCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid workflow definition"},
    }
)
async def create_workflow(definition: WorkflowDefinition) -> WorkflowCreateResponse:
    """
    Save a workflow definition produced by the editor.

    Saving an existing id replaces the definition; runs already in flight
    keep executing the snapshot they started with. Port type mismatches
    are reported as warnings and do not prevent saving.
    """
    errors = definition.validate_structure()
    if errors:
        raise HTTPException(
            status_code=400,
            detail=f"Workflow validation failed: {errors}"
        )

    warnings = definition.check_connections(plugin_registry)
    await workflow_storage.save(definition)

    logger.info(f"Saved workflow: {definition.id} ({definition.name})")

    return WorkflowCreateResponse(
        workflow_id=definition.id,
        name=definition.name,
        node_count=len(definition.nodes),
        warnings=warnings,
    )


def _workflow_info(stored: StoredWorkflow) -> WorkflowInfoResponse:
    definition = stored.to_definition()
    return WorkflowInfoResponse(
        workflow_id=stored.workflow_id,
        name=stored.name,
        node_count=len(definition.nodes),
        edge_count=len(definition.edges),
        trigger_nodes=[n.id for n in supervisor.find_trigger_nodes(definition)],
        created_at=stored.created_at.isoformat(),
        updated_at=stored.updated_at.isoformat(),
        definition=stored.definition,
    )


@router.get(
    "/",
    response_model=WorkflowListResponse,
)
async def list_workflows() -> WorkflowListResponse:
    """List all saved workflows."""
    workflows = [_workflow_info(w) for w in await workflow_storage.list_all()]
    return WorkflowListResponse(workflows=workflows, total=len(workflows))


@router.get(
    "/{workflow_id}",
    response_model=WorkflowInfoResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_workflow(workflow_id: str) -> WorkflowInfoResponse:
    """Get a saved workflow."""
    stored = await workflow_storage.get(workflow_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    return _workflow_info(stored)


@router.delete(
    "/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_workflow(workflow_id: str):
    """Delete a saved workflow."""
    deleted = await workflow_storage.delete(workflow_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' not found")
    logger.info(f"Deleted workflow: {workflow_id}")


# ============================================================
# Execution Endpoints
# ============================================================

@router.post(
    "/{workflow_id}/run",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def run_workflow(
    workflow_id: str,
    request: WorkflowRunRequest,
    background_tasks: BackgroundTasks,
) -> RunResponse:
    """
    Execute a saved workflow.

    Run failures are reported in the response body (`status` and `error`),
    not as HTTP errors. If `async_execution` is True, the run is scheduled
    in the background and you can poll it with GET /runs/{run_id}.
    """
    stored = await workflow_storage.get(workflow_id)
    if not stored:
        raise HTTPException(
            status_code=404,
            detail=f"Workflow '{workflow_id}' not found"
        )

    definition = stored.to_definition()

    if request.async_execution:
        run = await supervisor.create_run(definition)
        background_tasks.add_task(
            supervisor.execute,
            run,
            definition,
            request.payload,
            request.trigger_node_id,
        )
        return run_to_response(run.to_dict())

    run = await supervisor.start_workflow(
        definition,
        payload=request.payload,
        trigger_node_id=request.trigger_node_id,
    )
    steps = await run_archive.get_steps(run.id)
    return run_to_response(run.to_dict(), steps)


@router.post(
    "/execute",
    response_model=RunResponse,
)
async def execute_definition(request: WorkflowExecuteRequest) -> RunResponse:
    """
    Execute a definition without saving it (the editor's Run button).
    """
    run = await supervisor.start_workflow(
        request.definition,
        payload=request.payload,
        trigger_node_id=request.trigger_node_id,
    )
    steps = await run_archive.get_steps(run.id)
    return run_to_response(run.to_dict(), steps)
