"""
Storage package - In-memory storage for workflows, runs and webhooks.
"""

from portflow.storage.memory import (
    RunArchive,
    WebhookBindings,
    WorkflowStorage,
    run_archive,
    webhook_bindings,
    workflow_storage,
)

__all__ = [
    "RunArchive",
    "WebhookBindings",
    "WorkflowStorage",
    "run_archive",
    "webhook_bindings",
    "workflow_storage",
]
