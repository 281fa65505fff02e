"""Custom error classes for WasmFlow.

Errors fall into four categories: validation (bad graph edits and
compositions, rejected before anything runs), capability (effects denied at
the point of effect), execution (scoped to a single node) and
infrastructure (load failures, timeouts, forced aborts).
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorCategory(str, Enum):
    """Top-level classification carried by every WasmFlow error."""

    VALIDATION = "validation"
    CAPABILITY = "capability"
    EXECUTION = "execution"
    INFRASTRUCTURE = "infrastructure"


class WasmFlowError(Exception):
    """Base exception for all WasmFlow errors.

    Attributes:
        message: Human readable description
        node_id: Offending node, when known
        port_name: Offending port, when known
        hint: Remediation hint for the user, when one exists
    """

    category: ErrorCategory = ErrorCategory.EXECUTION

    def __init__(
        self,
        message: str,
        *,
        node_id: Optional[str] = None,
        port_name: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        self.message = message
        self.node_id = node_id
        self.port_name = port_name
        self.hint = hint
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "error": type(self).__name__,
            "message": self.message,
            "node_id": self.node_id,
            "port_name": self.port_name,
            "hint": self.hint,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class GraphValidationError(WasmFlowError):
    """Raised when a graph edit or graph structure is invalid."""

    category = ErrorCategory.VALIDATION


class DuplicateNodeError(GraphValidationError):
    """Raised when a node id is already present in the graph."""


class NodeNotFoundError(GraphValidationError):
    """Raised when a node id does not exist in the graph."""

    def __init__(self, node_id: str):
        super().__init__(f"Node '{node_id}' not found", node_id=node_id)


class PortNotFoundError(GraphValidationError):
    """Raised when a port name does not exist on a node."""

    def __init__(self, node_id: str, port_name: str, direction: str):
        self.direction = direction
        super().__init__(
            f"Node '{node_id}' has no {direction} port '{port_name}'",
            node_id=node_id,
            port_name=port_name,
        )


class IncompatibleTypesError(GraphValidationError):
    """Raised when the two endpoints of an edge have incompatible types."""

    def __init__(self, source_type: str, target_type: str, *, node_id=None, port_name=None):
        self.source_type = source_type
        self.target_type = target_type
        super().__init__(
            f"Type mismatch: {source_type} cannot connect to {target_type}",
            node_id=node_id,
            port_name=port_name,
            hint="Insert a conversion node or connect a port of a matching type",
        )


class CycleDetectedError(GraphValidationError):
    """Raised when an edge would close a cycle in the graph."""

    def __init__(self, message: str, cycle: Optional[List[str]] = None):
        self.cycle = cycle or []
        super().__init__(message)


class PortAlreadyConnectedError(GraphValidationError):
    """Raised when an input port already has an incoming edge."""


class SelfConnectionError(GraphValidationError):
    """Raised when an edge would connect a node to itself."""


class CompositionError(GraphValidationError):
    """Base for rejected compositions."""


class InsufficientSelectionError(CompositionError):
    """Raised when fewer than two nodes are selected for composition."""


class DisconnectedSelectionError(CompositionError):
    """Raised when the selected nodes do not form a connected subgraph."""


class NotComposableError(CompositionError):
    """Raised when a selected node is not backed by a WebAssembly component."""


class NoCompatiblePairingError(CompositionError):
    """Raised when no plug export matches any unresolved socket import."""


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------


class InvalidCapabilityError(WasmFlowError):
    """Raised when a capability string does not follow `category:scope`."""

    category = ErrorCategory.CAPABILITY


class ComponentError(WasmFlowError):
    """Base for failures surfaced by the component host for one invocation."""

    def __init__(self, message: str, *, component_id: Optional[str] = None, **kwargs: Any):
        self.component_id = component_id
        super().__init__(message, **kwargs)


class CapabilityViolationError(ComponentError):
    """Raised when a component attempts an effect it was not granted."""

    category = ErrorCategory.CAPABILITY

    def __init__(self, denial: Any, *, component_id: Optional[str] = None, node_id: Optional[str] = None):
        self.denial = denial
        super().__init__(
            f"Capability denied for {denial.operation}: {denial.reason.value}",
            component_id=component_id,
            node_id=node_id,
            hint=denial.hint,
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionError(ComponentError):
    """Raised when a component invocation fails for a single node."""

    category = ErrorCategory.EXECUTION


class MissingInputError(ExecutionError):
    """Raised when a required input port has no value."""


class InvalidInputTypeError(ExecutionError):
    """Raised when an input value does not match the declared port type."""


class ComponentReportedError(ExecutionError):
    """Raised when the component itself returns an error."""


class ComponentTrapError(ExecutionError):
    """Raised when the sandbox traps or the component fails in an unexpected way."""


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class InfrastructureError(ComponentError):
    """Raised when the runtime itself fails for a node or task."""

    category = ErrorCategory.INFRASTRUCTURE


class ComponentNotFoundError(InfrastructureError):
    """Raised when a component id is not registered with the host."""


class ComponentLoadError(InfrastructureError):
    """Raised when an artifact cannot be read, compiled or introspected."""


class ExecutionTimeoutError(InfrastructureError):
    """Raised when an invocation exceeds its time bound."""


class CompositionTimeoutError(InfrastructureError):
    """Raised when composition exceeds its time bound."""


class ForcedAbortError(InfrastructureError):
    """Raised when a continuous task had to be forcibly terminated."""


class SnapshotIntegrityError(InfrastructureError):
    """Raised when a persisted graph snapshot fails verification."""


# ---------------------------------------------------------------------------
# Continuous execution
# ---------------------------------------------------------------------------


class ContinuousNodeError(WasmFlowError):
    """Base for invalid continuous-controller requests."""

    category = ErrorCategory.VALIDATION


class AlreadyRunningError(ContinuousNodeError):
    """Raised when starting a continuous node that is already active."""


class NotRunningError(ContinuousNodeError):
    """Raised when stopping a continuous node that is not active."""


class NotContinuousError(ContinuousNodeError):
    """Raised when a node does not support continuous execution."""
