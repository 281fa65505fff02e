"""Graph model, value types and the execution engine."""

from wasmflow.core.types import NodeValue, ValueKind, types_compatible
from wasmflow.core.graph import (
    CompositionData,
    Edge,
    Node,
    NodeGraph,
    Port,
    PortDirection,
    PortMapping,
    ValidationReport,
)
from wasmflow.core.state import (
    ContinuousExecutionState,
    ContinuousNodeConfig,
    ExecutionState,
)
from wasmflow.core.component import (
    BuiltinSpec,
    ComponentInfo,
    ComponentSpec,
    ComposedSpec,
    PortSpec,
    WasmComponentSpec,
)
from wasmflow.core.events import EventEmitter, EventType, ExecutionEvent
from wasmflow.core.executor import ExecutionReport, Executor, ExecutorConfig

__all__ = [
    "NodeValue",
    "ValueKind",
    "types_compatible",
    "CompositionData",
    "Edge",
    "Node",
    "NodeGraph",
    "Port",
    "PortDirection",
    "PortMapping",
    "ValidationReport",
    "ContinuousExecutionState",
    "ContinuousNodeConfig",
    "ExecutionState",
    "BuiltinSpec",
    "ComponentInfo",
    "ComponentSpec",
    "ComposedSpec",
    "PortSpec",
    "WasmComponentSpec",
    "EventEmitter",
    "EventType",
    "ExecutionEvent",
    "ExecutionReport",
    "Executor",
    "ExecutorConfig",
]
