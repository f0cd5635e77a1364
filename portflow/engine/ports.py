"""
Port and Plugin Descriptors.

A plugin descriptor is the immutable capability record of a node type:
its input and output ports, the data new nodes start with, and the
``run`` callable the engine invokes to execute a node of that type.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import functools
import inspect

from portflow.engine.context import CancellationToken, StepLogEntry


class DataType(str, Enum):
    """Data types a port can declare."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"


def types_compatible(source: DataType, target: DataType) -> bool:
    """Two ports can be connected if their types match or either is ``any``."""
    return source == target or DataType.ANY in (source, target)


@dataclass(frozen=True)
class PortDescriptor:
    """
    A named, typed input or output slot on a node type.

    Attributes:
        id: Identifier, unique within the node type (used as edge handle)
        name: Human-readable name
        data_type: Declared data type
        description: Optional description of what the port carries
    """
    id: str
    name: str = ""
    data_type: DataType = DataType.ANY
    description: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Port id cannot be empty")
        object.__setattr__(self, "data_type", DataType(self.data_type))
        if not self.name:
            object.__setattr__(self, "name", self.id)

    @classmethod
    def coerce(cls, value: Union["PortDescriptor", Dict[str, Any]]) -> "PortDescriptor":
        """Build a port from a descriptor or a plain (editor style) dict."""
        if isinstance(value, cls):
            return value
        return cls(
            id=value["id"],
            name=value.get("name", ""),
            data_type=value.get("data_type", value.get("dataType", DataType.ANY)),
            description=value.get("description") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data_type": self.data_type.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class ConfigField:
    """A configuration field shown in the editor's settings panel for a node."""
    name: str
    label: str
    type: str = "string"  # string | text | number | boolean | select | json
    options: Tuple[Dict[str, str], ...] = ()
    placeholder: str = ""
    default_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "type": self.type,
            "options": list(self.options),
            "placeholder": self.placeholder,
            "default_value": self.default_value,
        }


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Plugins opt in by attaching a policy to their descriptor; side-effecting
    nodes simply leave it out and are never retried.
    """
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_factor: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.backoff_seconds * (self.backoff_factor ** (attempt - 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_seconds": self.backoff_seconds,
            "backoff_factor": self.backoff_factor,
        }


@dataclass
class PluginContext:
    """
    Second argument handed to a plugin's ``run``.

    Attributes:
        node_id: Id of the node being executed
        node_data: Plugin default data overlaid with the node's own data
        run_id: Id of the workflow run
        payload: Payload the run was started with (e.g. a webhook body)
        cancel_token: Set when an operator cancels the run
        logs: Log lines recorded with ``log`` (copied into the step result)
    """
    node_id: str
    node_data: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    payload: Any = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    logs: List[StepLogEntry] = field(default_factory=list)

    def log(self, message: str, level: str = "info") -> None:
        """Attach a log line to this node's step result."""
        self.logs.append(StepLogEntry(level=level, message=message))


PluginRun = Callable[[Dict[str, Any], PluginContext], Any]


@dataclass(frozen=True)
class PluginDescriptor:
    """
    The registered capability record for a node type.

    Descriptors never change once registered. ``run`` receives the input
    map (input port id -> value) and a ``PluginContext`` and returns a map
    from output port id to value. It may be sync or async.

    Attributes:
        id: Globally unique node type key
        name: Human-readable name
        description: What the node does
        run: The execution callable
        category: Optional palette category (e.g. 'Core', 'Math')
        inputs: Input ports; a plugin without inputs is a trigger
        outputs: Output ports
        default_data: Data a new node of this type starts with
        config_fields: Editor settings fields
        retry: Retry policy, or None to never retry
        timeout_seconds: Per-invocation timeout override
    """
    id: str
    name: str
    run: PluginRun
    description: str = ""
    category: Optional[str] = None
    inputs: Tuple[PortDescriptor, ...] = ()
    outputs: Tuple[PortDescriptor, ...] = ()
    default_data: Dict[str, Any] = field(default_factory=dict)
    config_fields: Tuple[ConfigField, ...] = ()
    retry: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = None

    def __post_init__(self):
        if not callable(self.run):
            raise ValueError(f"run for plugin '{self.id}' must be callable")
        object.__setattr__(self, "inputs", tuple(PortDescriptor.coerce(p) for p in self.inputs))
        object.__setattr__(self, "outputs", tuple(PortDescriptor.coerce(p) for p in self.outputs))
        object.__setattr__(self, "config_fields", tuple(self.config_fields))
        object.__setattr__(self, "default_data", dict(self.default_data))

    @property
    def is_trigger(self) -> bool:
        """Trigger plugins declare no input ports."""
        return len(self.inputs) == 0

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.run)

    def input_port(self, port_id: str) -> Optional[PortDescriptor]:
        return next((p for p in self.inputs if p.id == port_id), None)

    def output_port(self, port_id: str) -> Optional[PortDescriptor]:
        return next((p for p in self.outputs if p.id == port_id), None)

    def merge_data(self, node_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Overlay a node's data on top of this plugin's defaults."""
        merged = dict(self.default_data)
        merged.update(node_data or {})
        return merged

    async def execute(self, inputs: Dict[str, Any], context: PluginContext) -> Dict[str, Any]:
        """
        Invoke ``run`` and normalise its result.

        Sync callables run in the default executor so they do not block
        the event loop, and a timeout around this call can fire while they
        work. A worker thread cannot be interrupted, though: after a
        timeout or cancellation the thread keeps running until ``run``
        returns, and its result is discarded.

        Returns:
            Output map (empty if ``run`` returned None)

        Raises:
            ValueError: If ``run`` returned something other than a mapping
        """
        if self.is_async:
            result = await self.run(inputs, context)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None,
                functools.partial(self.run, inputs, context)
            )
            if inspect.isawaitable(result):
                result = await result

        if result is None:
            return {}
        if isinstance(result, dict):
            return result
        raise ValueError(
            f"Plugin '{self.id}' run must return a dict or None, "
            f"got {type(result).__name__}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the descriptor metadata (without the callable)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "inputs": [p.to_dict() for p in self.inputs],
            "outputs": [p.to_dict() for p in self.outputs],
            "default_data": dict(self.default_data),
            "config_fields": [f.to_dict() for f in self.config_fields],
            "retry": self.retry.to_dict() if self.retry else None,
            "timeout_seconds": self.timeout_seconds,
        }


def define_plugin(
    id: str,
    name: Optional[str] = None,
    description: str = "",
    category: Optional[str] = None,
    inputs: Iterable[Union[PortDescriptor, Dict[str, Any]]] = (),
    outputs: Iterable[Union[PortDescriptor, Dict[str, Any]]] = (),
    default_data: Optional[Dict[str, Any]] = None,
    config_fields: Iterable[ConfigField] = (),
    retry: Optional[RetryPolicy] = None,
    timeout_seconds: Optional[float] = None,
) -> Callable[[PluginRun], PluginDescriptor]:
    """
    Decorator turning a run function into a ``PluginDescriptor``.

    Usage:
        @define_plugin(
            id="upper",
            inputs=[PortDescriptor("text", data_type=DataType.STRING)],
            outputs=[PortDescriptor("output", data_type=DataType.STRING)],
        )
        async def upper(inputs, context):
            return {"output": str(inputs.get("text", "")).upper()}

    The decorated name is bound to the descriptor, not the function.
    """
    def decorator(func: PluginRun) -> PluginDescriptor:
        return PluginDescriptor(
            id=id,
            name=name or func.__name__,
            run=func,
            description=description or (func.__doc__ or "").strip(),
            category=category,
            inputs=tuple(inputs),
            outputs=tuple(outputs),
            default_data=default_data or {},
            config_fields=tuple(config_fields),
            retry=retry,
            timeout_seconds=timeout_seconds,
        )

    return decorator
