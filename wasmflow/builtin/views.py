"""Display components."""

from typing import Dict

from wasmflow.builtin.base import BuiltinComponent
from wasmflow.core.component import PortSpec
from wasmflow.core.types import NodeValue
from wasmflow.runtime.host_api import HostContext


class DisplayComponent(BuiltinComponent):
    """Shows its input; `value` passes the input through, `text` renders it."""

    component_id = "builtin:display"
    name = "Display"
    description = "Displays a value"
    category = "Views"
    inputs = [PortSpec(name="value", type="any", description="Value to display")]
    outputs = [
        PortSpec(name="value", type="any", description="The displayed value"),
        PortSpec(name="text", type="string", description="Rendered value"),
    ]

    async def _execute_impl(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        value = inputs["value"]
        return {"value": value, "text": NodeValue.string(value.display())}
