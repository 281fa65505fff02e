"""Builtin continuous components.

Each controller task runs its own instance (see ``BuiltinComponent.fresh``),
so the state kept here belongs to exactly one running node.
"""

import time
from typing import Dict, Optional

from wasmflow.builtin.base import BuiltinComponent
from wasmflow.core.component import PortSpec
from wasmflow.core.types import NodeValue
from wasmflow.runtime.host_api import HostContext


class TimerComponent(BuiltinComponent):
    """Counts iterations and reports time since the first one."""

    component_id = "builtin:continuous:timer"
    name = "Timer"
    description = "Counts iterations while running"
    category = "Continuous"
    continuous = True
    inputs = [
        PortSpec(name="interval", type="u32", optional=True, description="Interval in milliseconds (default: 100)"),
    ]
    outputs = [
        PortSpec(name="counter", type="u32", description="Number of iterations"),
        PortSpec(name="elapsed_seconds", type="f32", description="Elapsed time in seconds"),
    ]

    def __init__(self):
        super().__init__()
        self._started: Optional[float] = None
        self._counter = 0

    async def _execute_impl(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        now = time.monotonic()
        if self._started is None:
            self._started = now
        self._counter += 1
        return {
            "counter": NodeValue.u32(self._counter),
            "elapsed_seconds": NodeValue.f32(now - self._started),
        }


class CombinerComponent(BuiltinComponent):
    """Joins two strings each iteration, picking up input changes live."""

    component_id = "builtin:continuous:combiner"
    name = "String Combiner"
    description = "Continuously combines two strings"
    category = "Continuous"
    continuous = True
    inputs = [
        PortSpec(name="input_a", type="string", description="First input string"),
        PortSpec(name="input_b", type="string", description="Second input string"),
        PortSpec(name="separator", type="string", optional=True, description="Separator between inputs (default: space)"),
        PortSpec(name="interval", type="u32", optional=True, description="Interval in milliseconds"),
    ]
    outputs = [
        PortSpec(name="combined", type="string", description="Combined result"),
        PortSpec(name="length_a", type="u32", description="Length of input_a"),
        PortSpec(name="length_b", type="u32", description="Length of input_b"),
    ]

    async def _execute_impl(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        a = inputs["input_a"].value
        b = inputs["input_b"].value
        separator = inputs["separator"].value if "separator" in inputs else " "
        return {
            "combined": NodeValue.string(f"{a}{separator}{b}"),
            "length_a": NodeValue.u32(len(a)),
            "length_b": NodeValue.u32(len(b)),
        }
