"""
Engine package - Plugin registry, graph model and run execution.
"""

from portflow.engine.context import RunStatus, StepExecutionResult, WorkflowRun
from portflow.engine.ports import (
    DataType,
    PluginDescriptor,
    PortDescriptor,
    RetryPolicy,
    define_plugin,
)
from portflow.engine.registry import PluginRegistry, plugin_registry
from portflow.engine.models import WorkflowDefinition, WorkflowEdge, WorkflowNode
from portflow.engine.supervisor import RunSupervisor, run_workflow

__all__ = [
    "RunStatus",
    "StepExecutionResult",
    "WorkflowRun",
    "DataType",
    "PluginDescriptor",
    "PortDescriptor",
    "RetryPolicy",
    "define_plugin",
    "PluginRegistry",
    "plugin_registry",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowNode",
    "RunSupervisor",
    "run_workflow",
]
