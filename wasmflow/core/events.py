"""Event system for streaming execution updates.

Graph passes, continuous nodes and the composition service publish
``ExecutionEvent`` objects. Graph passes yield them from
``Executor.execute``; long-running producers publish them through an
``EventEmitter`` to registered async listeners.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Execution event types."""

    # Graph pass lifecycle
    EXECUTION_START = "execution-start"
    EXECUTION_COMPLETE = "execution-complete"

    # Node lifecycle
    NODE_START = "node-start"
    NODE_COMPLETE = "node-complete"
    NODE_ERROR = "node-error"
    NODE_SKIPPED = "node-skipped"

    # Continuous nodes
    CONTINUOUS_STATE = "continuous-state"
    CONTINUOUS_OUTPUT = "continuous-output"
    CONTINUOUS_ITERATION = "continuous-iteration"
    CONTINUOUS_ERROR = "continuous-error"

    # Composition
    COMPOSITION_COMPLETE = "composition-complete"


@dataclass
class ExecutionEvent:
    """A single execution event.

    Attributes:
        type: Event type
        node_id: Node the event refers to, if any
        output: Output values (wire form) for completion events
        error: Error message for error events
        state: New state name for state-change events
        timestamp: Creation time
        metadata: Additional event-specific data
    """

    type: EventType
    node_id: Optional[str] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    state: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to a JSON-serializable dictionary."""
        payload: Dict[str, Any] = {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.node_id:
            payload["node_id"] = self.node_id
        if self.output is not None:
            payload["output"] = self.output
        if self.error is not None:
            payload["errorText"] = self.error
        if self.state is not None:
            payload["state"] = self.state
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class EventEmitter:
    """Event emitter for publishing execution events.

    This class manages event listeners and provides methods for emitting
    events from background activities such as continuous nodes.
    """

    def __init__(self):
        self._listeners: List[Callable[[ExecutionEvent], Awaitable[None]]] = []

    def on(self, listener: Callable[[ExecutionEvent], Awaitable[None]]) -> None:
        """Register an event listener.

        Args:
            listener: Async function that receives ExecutionEvent objects
        """
        self._listeners.append(listener)

    def off(self, listener: Callable[[ExecutionEvent], Awaitable[None]]) -> None:
        """Remove an event listener.

        Args:
            listener: The listener function to remove
        """
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, event: ExecutionEvent) -> None:
        """Emit an event to all listeners.

        A failing listener is logged and never interrupts the producer.

        Args:
            event: The event to emit
        """
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event.type.value)

    def clear(self) -> None:
        """Remove all event listeners."""
        self._listeners.clear()
