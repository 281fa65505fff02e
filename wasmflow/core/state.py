"""Execution state for nodes and continuous nodes.

Node execution follows ``Idle -> Running -> {Completed, Failed}``.
Continuous nodes additionally carry a lifecycle state and a transient
runtime record that exists only while the node is active and is never
persisted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ExecutionState(str, Enum):
    """Per-node execution state."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ContinuousExecutionState(str, Enum):
    """Lifecycle of a continuous node.

    Idle -> Starting -> Running -> Stopping -> {Stopped, Error}
    """

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (
            ContinuousExecutionState.STARTING,
            ContinuousExecutionState.RUNNING,
            ContinuousExecutionState.STOPPING,
        )


class ContinuousRuntimeState(BaseModel):
    """Transient state of a running continuous node.

    Attributes:
        is_running: True between start and the end of shutdown
        started_at: When the current run started
        iterations: Completed iterations in the current run
        last_error: Message of the error that ended the last run, if any
        execution_state: Lifecycle state
    """

    is_running: bool = False
    started_at: Optional[datetime] = None
    iterations: int = 0
    last_error: Optional[str] = None
    execution_state: ContinuousExecutionState = ContinuousExecutionState.IDLE


class ContinuousNodeConfig(BaseModel):
    """Persisted configuration of a continuous-capable node.

    Attributes:
        supports_continuous: Whether the component runs until stopped
        enabled: Whether the user enabled continuous mode for this node
        interval_ms: Pause between iterations when no `interval` input is wired;
            the host default when None
        runtime_state: Transient runtime record, excluded from every dump
    """

    supports_continuous: bool = True
    enabled: bool = False
    interval_ms: Optional[int] = Field(default=None, ge=1)
    runtime_state: ContinuousRuntimeState = Field(default_factory=ContinuousRuntimeState, exclude=True)

    def reset_runtime(self) -> None:
        self.runtime_state = ContinuousRuntimeState()
