"""
Workflows package - Sample workflow definitions.
"""

from portflow.workflows.demo import DEMO_WORKFLOW_ID, create_hello_workflow, register_hello_workflow

__all__ = [
    "DEMO_WORKFLOW_ID",
    "create_hello_workflow",
    "register_hello_workflow",
]
