"""Constant value components."""

from typing import Dict

from wasmflow.builtin.base import BuiltinComponent
from wasmflow.core.component import PortSpec
from wasmflow.core.types import NodeValue
from wasmflow.runtime.host_api import HostContext


class ConstantComponent(BuiltinComponent):
    """Emits the value set on its `value` input."""

    data_type = "any"
    category = "Constants"

    def __init__(self):
        super().__init__()
        self.component_id = f"builtin:constant:{self.data_type}"
        self.name = f"Constant ({self.data_type})"
        self.description = f"Outputs a constant {self.data_type} value"
        self.inputs = [PortSpec(name="value", type=self.data_type, description="Value to emit")]
        self.outputs = [PortSpec(name="value", type=self.data_type, description="The constant value")]

    async def _execute_impl(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        return {"value": inputs["value"]}


class ConstantF32(ConstantComponent):
    data_type = "f32"


class ConstantU32(ConstantComponent):
    data_type = "u32"


class ConstantI32(ConstantComponent):
    data_type = "i32"


class ConstantString(ConstantComponent):
    data_type = "string"


class ConstantBool(ConstantComponent):
    data_type = "bool"
