"""
WasmFlow: dataflow graphs of sandboxed WebAssembly components

A node-graph runtime where every node is a component with typed input and
output ports. Components run in a wasmtime sandbox and reach the outside
world only through capability-checked host functions.

Example:
    >>> from wasmflow import ComponentHost, Executor, NodeGraph, NodeValue
    >>> from wasmflow.builtin import register_builtins
    >>>
    >>> host = ComponentHost()
    >>> register_builtins(host)
    >>> graph = NodeGraph()
    >>> a = host.get_spec("builtin:constant:f32").create_node()
    >>> add = host.get_spec("builtin:math:add").create_node()
    >>> graph.add_node(a)
    >>> graph.add_node(add)
    >>> graph.add_edge(a.id, "value", add.id, "a")
    >>> report = await Executor(host).run(graph)
"""

__version__ = "0.1.0"

# Graph model and engine
from wasmflow.core.types import NodeValue
from wasmflow.core.graph import Edge, Node, NodeGraph, Port
from wasmflow.core.component import ComponentInfo, PortSpec
from wasmflow.core.events import EventEmitter, EventType, ExecutionEvent
from wasmflow.core.executor import ExecutionReport, Executor, ExecutorConfig

# Runtime
from wasmflow.runtime.capabilities import Capability, CapabilityGrant, check
from wasmflow.runtime.host import ComponentHost
from wasmflow.runtime.continuous import ContinuousController
from wasmflow.runtime.composition import CompositionResult, CompositionService

# Persistence
from wasmflow.backends import MemoryBackend, SnapshotBackend, SQLiteBackend
from wasmflow.snapshots import GraphSnapshot, load_graph, save_graph

# Configuration and errors
from wasmflow.utils.config import WasmFlowSettings, get_settings, load_env
from wasmflow.utils.errors import WasmFlowError

__all__ = [
    "__version__",
    "NodeValue",
    "Edge",
    "Node",
    "NodeGraph",
    "Port",
    "ComponentInfo",
    "PortSpec",
    "EventEmitter",
    "EventType",
    "ExecutionEvent",
    "ExecutionReport",
    "Executor",
    "ExecutorConfig",
    "Capability",
    "CapabilityGrant",
    "check",
    "ComponentHost",
    "ContinuousController",
    "CompositionResult",
    "CompositionService",
    "MemoryBackend",
    "SnapshotBackend",
    "SQLiteBackend",
    "GraphSnapshot",
    "load_graph",
    "save_graph",
    "WasmFlowSettings",
    "get_settings",
    "load_env",
    "WasmFlowError",
]
