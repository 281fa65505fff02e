"""Base class for builtin components.

Builtins are native Python components registered in the host registry
under the ``builtin`` variant. They receive validated inputs and the
invocation's ``HostContext`` and return output values by port name.
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from wasmflow.core.component import BuiltinSpec, ComponentInfo, PortSpec
from wasmflow.core.types import NodeValue
from wasmflow.runtime.host_api import HostContext


class BuiltinComponent(ABC):
    """Base implementation shared by builtin components.

    Subclasses set the class attributes describing their interface and
    implement ``_execute_impl``.

    Attributes:
        component_id: Registry identity
        name: Display name
        description: Short description
        category: Palette category
        inputs: Declared input ports
        outputs: Declared output ports
        continuous: Whether the component runs until stopped
        invocations: Number of completed ``execute`` calls on this instance
    """

    component_id: str = ""
    name: str = ""
    description: str = ""
    category: str = "Builtin"
    inputs: List[PortSpec] = []
    outputs: List[PortSpec] = []
    continuous: bool = False

    def __init__(self):
        self.invocations = 0

    @property
    def spec(self) -> BuiltinSpec:
        return BuiltinSpec(
            id=self.component_id,
            info=ComponentInfo(
                name=self.name,
                version="1.0.0",
                description=self.description,
                author="WasmFlow",
                category=self.category,
            ),
            inputs=list(self.inputs),
            outputs=list(self.outputs),
            continuous=self.continuous,
        )

    def fresh(self) -> "BuiltinComponent":
        """New instance with clean state, used for continuous sessions."""
        return type(self)()

    @abstractmethod
    async def _execute_impl(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        pass

    async def execute(self, inputs: Dict[str, NodeValue], ctx: HostContext) -> Dict[str, NodeValue]:
        outputs = await self._execute_impl(inputs, ctx)
        self.invocations += 1
        return outputs

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id='{self.component_id}')"
