"""
Hello Workflow - Demo Implementation.

A small workflow exercising the built-in plugins:

    trigger --> name (transform) ----> greeter (greeting_node)
        \
         `----> length (transform) --> adder (adder_node)

With the default trigger value "Ada" the run ends with
``greeter.greeting_output == "Hello, Ada!"`` and ``adder.sum_output == 3``.
"""

from typing import Any, Optional
import logging

from portflow.engine.models import WorkflowDefinition, WorkflowEdge, WorkflowNode


logger = logging.getLogger(__name__)


DEMO_WORKFLOW_ID = "hello-demo"


def create_hello_workflow(name: str = "Ada") -> WorkflowDefinition:
    """
    Create the demo workflow.

    Args:
        name: Value emitted by the trigger node

    Returns:
        The workflow definition
    """
    nodes = [
        WorkflowNode(
            id="trigger",
            type="trigger",
            position={"x": 0, "y": 100},
            data={"label": "On App Start", "initial_value": name},
        ),
        WorkflowNode(
            id="name",
            type="transform",
            position={"x": 250, "y": 0},
            data={"label": "Pick name", "expression": "input['initial_value']"},
        ),
        WorkflowNode(
            id="greeter",
            type="greeting_node",
            position={"x": 500, "y": 0},
            data={"label": "Greeter", "prefix": "Hello"},
        ),
        WorkflowNode(
            id="length",
            type="transform",
            position={"x": 250, "y": 200},
            data={"label": "Name length", "expression": "len(input['initial_value'])"},
        ),
        WorkflowNode(
            id="adder",
            type="adder_node",
            position={"x": 500, "y": 200},
            data={"label": "Adder"},
        ),
    ]

    edges = [
        WorkflowEdge(id="e-trigger-name", source="trigger", target="name"),
        WorkflowEdge(id="e-name-greeter", source="name", target="greeter", target_handle="name_input"),
        WorkflowEdge(id="e-trigger-length", source="trigger", target="length"),
        WorkflowEdge(id="e-length-adder", source="length", target="adder", target_handle="num1"),
    ]

    return WorkflowDefinition(id=DEMO_WORKFLOW_ID, name="Hello Workflow", nodes=nodes, edges=edges)


async def register_hello_workflow():
    """
    Register the demo workflow in storage.

    This makes the workflow available immediately via the API
    without needing to create it first.
    """
    from portflow.storage.memory import workflow_storage

    workflow = create_hello_workflow()
    await workflow_storage.save(workflow)

    logger.info(f"Registered Hello workflow with ID: {DEMO_WORKFLOW_ID}")
    return workflow


async def run_hello_demo(name: Optional[str] = None) -> Any:
    """
    Run the demo workflow once and print the results.

    Usage:
        import asyncio
        from portflow.workflows.demo import run_hello_demo
        asyncio.run(run_hello_demo())
    """
    from portflow.engine.registry import PluginRegistry
    from portflow.engine.supervisor import run_workflow
    from portflow.plugins.builtin import register_builtin_plugins

    registry = register_builtin_plugins(PluginRegistry())
    run = await run_workflow(create_hello_workflow(name or "Ada"), registry)

    print(f"Run Status: {run.status.value}")
    print(f"Executed: {' -> '.join(run.executed_nodes)}")
    print(f"Greeting: {run.get_output('greeter', 'greeting_output')}")
    print(f"Sum: {run.get_output('adder', 'sum_output')}")
    return run


if __name__ == "__main__":
    import asyncio
    asyncio.run(run_hello_demo())
