"""Arithmetic components over f32 values."""

from typing import Dict

from wasmflow.builtin.base import BuiltinComponent
from wasmflow.core.component import PortSpec
from wasmflow.core.types import NodeValue
from wasmflow.runtime.host_api import HostContext
from wasmflow.utils.errors import ComponentReportedError

_OPERANDS = [
    PortSpec(name="a", type="f32", description="First operand"),
    PortSpec(name="b", type="f32", description="Second operand"),
]


class _BinaryMath(BuiltinComponent):
    category = "Math"
    inputs = _OPERANDS
    outputs = [PortSpec(name="result", type="f32", description="Result")]

    def apply(self, a: float, b: float) -> float:
        raise NotImplementedError

    async def _execute_impl(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        return {"result": NodeValue.f32(self.apply(inputs["a"].value, inputs["b"].value))}


class AddComponent(_BinaryMath):
    component_id = "builtin:math:add"
    name = "Add"
    description = "Adds two numbers"

    def apply(self, a: float, b: float) -> float:
        return a + b


class SubtractComponent(_BinaryMath):
    component_id = "builtin:math:subtract"
    name = "Subtract"
    description = "Subtracts b from a"

    def apply(self, a: float, b: float) -> float:
        return a - b


class MultiplyComponent(_BinaryMath):
    component_id = "builtin:math:multiply"
    name = "Multiply"
    description = "Multiplies two numbers"

    def apply(self, a: float, b: float) -> float:
        return a * b


class DivideComponent(_BinaryMath):
    component_id = "builtin:math:divide"
    name = "Divide"
    description = "Divides a by b"

    def apply(self, a: float, b: float) -> float:
        if b == 0:
            raise ComponentReportedError(
                "Division by zero",
                component_id=self.component_id,
                port_name="b",
                hint="Provide a non-zero divisor",
            )
        return a / b
