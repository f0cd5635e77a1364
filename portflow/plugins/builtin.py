"""
Built-in Plugins.

Core node types shipped with the engine, plus the saved scripted plugins
that the editor offers out of the box.
"""

from typing import Any, Dict, List
from datetime import datetime
from functools import lru_cache
import logging

from portflow.engine.ports import (
    ConfigField,
    DataType,
    PluginContext,
    PluginDescriptor,
    PortDescriptor,
    define_plugin,
)
from portflow.engine.registry import PluginRegistry, plugin_registry
from portflow.engine.sandbox import SafeExpression, compile_expression
from portflow.plugins.scripted import ScriptedPluginSpec, build_scripted_plugin


logger = logging.getLogger(__name__)


# ============================================================
# Triggers
# ============================================================

@define_plugin(
    id="trigger",
    name="Trigger",
    description="Starts the workflow (e.g. On App Start)",
    category="Core",
    outputs=[
        PortDescriptor("output", "Output", DataType.OBJECT, "Data to start the workflow"),
    ],
    default_data={"label": "On App Start", "initial_value": "Hello Workflow!"},
    config_fields=[
        ConfigField("label", "Label", placeholder="Enter trigger label", default_value="On App Start"),
        ConfigField("initial_value", "Initial Value", placeholder="Initial data to emit",
                    default_value="Hello Workflow!"),
    ],
)
async def trigger(inputs: Dict[str, Any], context: PluginContext) -> Dict[str, Any]:
    label = context.node_data.get("label")
    context.log(f"Trigger '{label}' fired")
    return {
        "output": {
            "message": f"Workflow triggered by '{label}'",
            "timestamp": datetime.now().isoformat(),
            "initial_value": context.node_data.get("initial_value"),
            "payload": context.payload,
        }
    }


@define_plugin(
    id="webhook_trigger",
    name="Webhook Trigger",
    description="Starts the workflow when its webhook receives a request",
    category="Triggers",
    outputs=[
        PortDescriptor("output", "Payload", DataType.OBJECT, "Body of the webhook request"),
    ],
    default_data={"label": "Webhook", "webhook_id": ""},
    config_fields=[
        ConfigField("label", "Label", default_value="Webhook"),
        ConfigField("webhook_id", "Webhook ID", placeholder="Id used in /webhooks/{id}"),
    ],
)
async def webhook_trigger(inputs: Dict[str, Any], context: PluginContext) -> Dict[str, Any]:
    payload = context.payload if context.payload is not None else {}
    context.log(f"Webhook '{context.node_data.get('webhook_id')}' delivered payload")
    return {"output": payload}


# ============================================================
# Actions
# ============================================================

@lru_cache(maxsize=256)
def _compiled(source: str) -> SafeExpression:
    return compile_expression(source)


@define_plugin(
    id="transform",
    name="Transform",
    description="Computes its output from a sandboxed expression over 'input'",
    category="Core",
    inputs=[PortDescriptor("input", "Input", DataType.ANY, "Value to transform")],
    outputs=[PortDescriptor("output", "Result", DataType.ANY, "Expression result")],
    default_data={"label": "Transform", "expression": "input"},
    config_fields=[
        ConfigField("label", "Label", default_value="Transform"),
        ConfigField("expression", "Expression", type="text", placeholder="e.g. input['message'].upper()",
                    default_value="input"),
    ],
)
def transform(inputs: Dict[str, Any], context: PluginContext) -> Dict[str, Any]:
    expression = _compiled(str(context.node_data.get("expression") or "input"))
    names = {"input": inputs.get("input"), "inputs": inputs, "data": context.node_data}
    return {"output": expression.evaluate(names)}


# ============================================================
# Saved scripted plugins
# ============================================================

SAVED_PLUGIN_SPECS: List[ScriptedPluginSpec] = [
    ScriptedPluginSpec(
        id="greeting_node",
        name="Greeting Node",
        description="Generates a greeting string.",
        category="Text",
        inputs=[{"id": "name_input", "name": "Name", "data_type": "string", "description": "Name to greet"}],
        outputs=[{"id": "greeting_output", "name": "Greeting", "data_type": "string",
                  "description": "The generated greeting"}],
        default_data={"label": "Greeter", "prefix": "Hello"},
        config_fields=[{"name": "prefix", "label": "Greeting Prefix", "default_value": "Hello"}],
        expressions={
            "greeting_output": "f\"{data.get('prefix') or 'Hi'}, {inputs.get('name_input')}!\"",
        },
    ),
    ScriptedPluginSpec(
        id="adder_node",
        name="Adder Node",
        description="Adds two numbers.",
        category="Math",
        inputs=[
            {"id": "num1", "name": "Number 1", "data_type": "number", "description": "First number"},
            {"id": "num2", "name": "Number 2", "data_type": "number", "description": "Second number"},
        ],
        outputs=[{"id": "sum_output", "name": "Sum", "data_type": "number",
                  "description": "The sum of the two numbers"}],
        default_data={"label": "Adder"},
        expressions={
            "sum_output": "(inputs.get('num1') or 0) + (inputs.get('num2') or 0)",
        },
    ),
]


def builtin_plugins() -> List[PluginDescriptor]:
    """All built-in plugin descriptors."""
    return [trigger, webhook_trigger, transform] + [
        build_scripted_plugin(spec) for spec in SAVED_PLUGIN_SPECS
    ]


def register_builtin_plugins(
    registry: PluginRegistry = plugin_registry,
    replace: bool = True,
) -> PluginRegistry:
    """
    Register every built-in plugin into ``registry``.

    With ``replace=False`` plugins already present are left as they are,
    so calling it again (e.g. on every app startup) is a no-op.
    """
    for descriptor in builtin_plugins():
        if not replace and registry.has(descriptor.id):
            continue
        registry.register(descriptor)
    logger.info(f"Registered {len(registry)} plugins")
    return registry
