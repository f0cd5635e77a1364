"""
Run API Routes.

Status, step logs and cancellation of workflow runs. Active runs are
answered by the supervisor; finished runs by the run archive.
"""

from typing import List, Optional
from fastapi import APIRouter, HTTPException
import logging

from portflow.api.runtime import run_to_response, supervisor
from portflow.api.schemas import (
    ErrorResponse,
    RunCancelResponse,
    RunListResponse,
    RunResponse,
    StepInfo,
)
from portflow.storage.memory import run_archive


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])


@router.get(
    "/",
    response_model=RunListResponse,
)
async def list_runs(workflow_id: Optional[str] = None) -> RunListResponse:
    """List active and finished runs, optionally filtered by workflow_id."""
    runs = []

    for run in supervisor.active_runs():
        if workflow_id is None or run.workflow_definition_id == workflow_id:
            runs.append(run_to_response(run.to_dict()))

    if workflow_id:
        archived = await run_archive.list_by_workflow(workflow_id)
    else:
        archived = await run_archive.list_all()
    runs.extend(run_to_response(stored.run, stored.steps) for stored in archived)

    return RunListResponse(runs=runs, total=len(runs))


@router.get(
    "/{run_id}",
    response_model=RunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run(run_id: str) -> RunResponse:
    """
    Get the current state of a workflow run.

    Use this to poll runs started with `async_execution` or by a webhook.
    """
    active = supervisor.get_run_status(run_id)
    if active is not None:
        steps = await run_archive.get_steps(run_id)
        return run_to_response(active.to_dict(), steps)

    stored = await run_archive.get(run_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run_to_response(stored.run, stored.steps)


@router.get(
    "/{run_id}/steps",
    response_model=List[StepInfo],
    responses={404: {"model": ErrorResponse}},
)
async def get_run_steps(run_id: str) -> List[StepInfo]:
    """Step log of a run, in the order nodes finished."""
    steps = await run_archive.get_steps(run_id)
    if steps is None:
        if supervisor.get_run_status(run_id) is not None:
            return []
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return [StepInfo(**step) for step in steps]


@router.post(
    "/{run_id}/cancel",
    response_model=RunCancelResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Run already finished"},
    }
)
async def cancel_run(run_id: str) -> RunCancelResponse:
    """
    Cancel an active run.

    Queued nodes are skipped and the node currently executing is
    interrupted; the run finishes with status `cancelled`.
    """
    if supervisor.cancel_run(run_id, reason="Cancelled via API"):
        return RunCancelResponse(
            run_id=run_id,
            cancelled=True,
            message="Cancellation requested",
        )

    if await run_archive.get(run_id):
        raise HTTPException(status_code=409, detail=f"Run '{run_id}' has already finished")
    raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
