"""
Webhook API Routes.

A webhook id is bound to a saved workflow. A request to the webhook
starts that workflow with the request body as trigger payload.
"""

from typing import Any, Optional
from fastapi import APIRouter, Body, HTTPException, BackgroundTasks, status
import logging

from portflow.api.runtime import supervisor
from portflow.api.schemas import (
    ErrorResponse,
    WebhookBindRequest,
    WebhookDispatchResponse,
    WebhookStatusResponse,
)
from portflow.engine.models import WorkflowDefinition
from portflow.storage.memory import webhook_bindings, workflow_storage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

WEBHOOK_TRIGGER_TYPE = "webhook_trigger"


def find_webhook_trigger(definition: WorkflowDefinition, webhook_id: str) -> Optional[str]:
    """Id of the webhook trigger node listening on ``webhook_id``, if any."""
    for node in definition.nodes:
        if node.type == WEBHOOK_TRIGGER_TYPE and node.data.get("webhook_id") == webhook_id:
            return node.id
    return None


@router.post(
    "/{webhook_id}",
    response_model=WebhookDispatchResponse,
    responses={404: {"model": ErrorResponse, "description": "Webhook not active"}},
)
async def dispatch_webhook(
    webhook_id: str,
    background_tasks: BackgroundTasks,
    payload: Any = Body(None),
) -> WebhookDispatchResponse:
    """
    Start the workflow bound to this webhook.

    Responds as soon as the run is scheduled; poll GET /runs/{run_id} for
    the outcome. The run starts at the webhook trigger node configured
    with this webhook id, or at the workflow's default trigger.
    """
    workflow_id = await webhook_bindings.get(webhook_id)
    if workflow_id is None:
        raise HTTPException(status_code=404, detail=f"Webhook '{webhook_id}' is not active")

    stored = await workflow_storage.get(workflow_id)
    if not stored:
        raise HTTPException(
            status_code=404,
            detail=f"Workflow '{workflow_id}' bound to webhook '{webhook_id}' not found"
        )

    definition = stored.to_definition()
    trigger_node_id = find_webhook_trigger(definition, webhook_id)

    run = await supervisor.create_run(definition)
    background_tasks.add_task(supervisor.execute, run, definition, payload, trigger_node_id)

    logger.info(f"Webhook '{webhook_id}' scheduled run {run.id} of workflow {workflow_id}")

    return WebhookDispatchResponse(
        webhook_id=webhook_id,
        workflow_id=workflow_id,
        run_id=run.id,
        status=run.status,
    )


@router.put(
    "/{webhook_id}",
    response_model=WebhookStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def bind_webhook(webhook_id: str, request: WebhookBindRequest) -> WebhookStatusResponse:
    """Bind (or re-bind) a webhook id to a saved workflow."""
    if not await workflow_storage.exists(request.workflow_id):
        raise HTTPException(status_code=404, detail=f"Workflow '{request.workflow_id}' not found")

    await webhook_bindings.bind(webhook_id, request.workflow_id)
    logger.info(f"Webhook '{webhook_id}' bound to workflow {request.workflow_id}")

    return WebhookStatusResponse(webhook_id=webhook_id, active=True, workflow_id=request.workflow_id)


@router.delete(
    "/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def unbind_webhook(webhook_id: str):
    """Deactivate a webhook."""
    if not await webhook_bindings.unbind(webhook_id):
        raise HTTPException(status_code=404, detail=f"Webhook '{webhook_id}' is not active")
    logger.info(f"Webhook '{webhook_id}' unbound")


@router.get(
    "/{webhook_id}",
    response_model=WebhookStatusResponse,
)
async def webhook_status(webhook_id: str) -> WebhookStatusResponse:
    """Report whether a webhook is active and which workflow it starts."""
    workflow_id = await webhook_bindings.get(webhook_id)
    return WebhookStatusResponse(
        webhook_id=webhook_id,
        active=workflow_id is not None,
        workflow_id=workflow_id,
    )
