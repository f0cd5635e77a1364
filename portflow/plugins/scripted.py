"""
Scripted Plugins.

A scripted plugin is a plugin authored as data instead of code: the usual
port lists and default data plus one sandboxed expression per output
port. This is what the plugin editor saves and what ``POST
/plugins/scripted`` accepts.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import logging

from portflow.engine.ports import (
    ConfigField,
    DataType,
    PluginContext,
    PluginDescriptor,
    PortDescriptor,
)
from portflow.engine.sandbox import SafeExpression, SandboxError, compile_expression


logger = logging.getLogger(__name__)


class PortSpec(BaseModel):
    """Port as written by the editor."""
    id: str
    name: str = ""
    data_type: DataType = Field(DataType.ANY, alias="dataType")
    description: str = ""

    class Config:
        populate_by_name = True

    def to_descriptor(self) -> PortDescriptor:
        return PortDescriptor(
            id=self.id,
            name=self.name,
            data_type=self.data_type,
            description=self.description,
        )


class ConfigFieldSpec(BaseModel):
    """Settings panel field as written by the editor."""
    name: str
    label: str
    type: str = "string"
    options: List[Dict[str, str]] = Field(default_factory=list)
    placeholder: str = ""
    default_value: Any = Field(None, alias="defaultValue")

    class Config:
        populate_by_name = True

    def to_field(self) -> ConfigField:
        return ConfigField(
            name=self.name,
            label=self.label,
            type=self.type,
            options=tuple(self.options),
            placeholder=self.placeholder,
            default_value=self.default_value,
        )


class ScriptedPluginSpec(BaseModel):
    """
    A savable plugin definition.

    ``expressions`` maps output port ids to expressions evaluated with two
    names in scope: ``inputs`` (input port id -> value) and ``data`` (the
    node's configuration merged over ``default_data``).
    """
    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    category: Optional[str] = None
    inputs: List[PortSpec] = Field(default_factory=list)
    outputs: List[PortSpec] = Field(default_factory=list)
    default_data: Dict[str, Any] = Field(default_factory=dict, alias="defaultData")
    config_fields: List[ConfigFieldSpec] = Field(default_factory=list, alias="configFields")
    expressions: Dict[str, str] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "id": "adder_node",
                "name": "Adder Node",
                "description": "Adds two numbers.",
                "category": "Math",
                "inputs": [
                    {"id": "num1", "name": "Number 1", "data_type": "number"},
                    {"id": "num2", "name": "Number 2", "data_type": "number"}
                ],
                "outputs": [{"id": "sum_output", "name": "Sum", "data_type": "number"}],
                "default_data": {"label": "Adder"},
                "expressions": {
                    "sum_output": "(inputs.get('num1') or 0) + (inputs.get('num2') or 0)"
                }
            }
        }


def build_scripted_plugin(spec: ScriptedPluginSpec) -> PluginDescriptor:
    """
    Compile a scripted plugin into a descriptor.

    Every expression is compiled up front, so a bad script is rejected at
    registration time rather than on first execution.

    Raises:
        SandboxError: If an expression is invalid or targets an unknown port
    """
    output_ids = {port.id for port in spec.outputs}
    compiled: Dict[str, SafeExpression] = {}

    for port_id, source in spec.expressions.items():
        if port_id not in output_ids:
            raise SandboxError(f"Expression given for unknown output port '{port_id}'")
        try:
            compiled[port_id] = compile_expression(source)
        except SandboxError as e:
            raise SandboxError(f"Output '{port_id}': {e}") from None

    def run(inputs: Dict[str, Any], context: PluginContext) -> Dict[str, Any]:
        names = {"inputs": inputs, "data": context.node_data}
        return {port_id: expr.evaluate(names) for port_id, expr in compiled.items()}

    run.__name__ = f"{spec.id}_run"

    logger.debug(f"Compiled scripted plugin '{spec.id}' with outputs {list(compiled)}")

    return PluginDescriptor(
        id=spec.id,
        name=spec.name,
        run=run,
        description=spec.description,
        category=spec.category,
        inputs=tuple(p.to_descriptor() for p in spec.inputs),
        outputs=tuple(p.to_descriptor() for p in spec.outputs),
        default_data=spec.default_data,
        config_fields=tuple(f.to_field() for f in spec.config_fields),
    )
