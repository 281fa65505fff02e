"""Component specifications.

A component is described by one of three variants, discriminated on
``kind``:

- ``builtin``: a native Python function registered with the host
- ``wasm``: a compiled WebAssembly artifact plus its declared capabilities
- ``composed``: the product of the composition service, an internal
  subgraph snapshot with an exposed interface

Every variant carries the metadata returned by the component contract
(``get_info``, ``get_inputs``, ``get_outputs``, ``get_capabilities``), so
nodes can be created without running user logic.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from wasmflow.core.graph import CompositionData, Node, Port, PortDirection
from wasmflow.core.state import ContinuousNodeConfig
from wasmflow.core.types import normalize_type


class ComponentInfo(BaseModel):
    """Result of the component's `get_info` export."""

    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    category: Optional[str] = None


class PortSpec(BaseModel):
    """One entry of `get_inputs` / `get_outputs`."""

    name: str
    type: str
    optional: bool = False
    description: str = ""

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return normalize_type(value)

    def to_port(self, direction: PortDirection) -> Port:
        return Port(
            name=self.name,
            data_type=self.type,
            direction=direction,
            optional=self.optional,
            description=self.description,
        )


class _SpecBase(BaseModel):
    id: str
    info: ComponentInfo
    inputs: List[PortSpec] = Field(default_factory=list)
    outputs: List[PortSpec] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    continuous: bool = False

    def create_node(self, node_id: Optional[str] = None, display_name: Optional[str] = None) -> Node:
        """Instantiate a graph node with this component's ports."""
        node = Node(
            component_id=self.id,
            display_name=display_name or self.info.name,
            inputs=[spec.to_port(PortDirection.INPUT) for spec in self.inputs],
            outputs=[spec.to_port(PortDirection.OUTPUT) for spec in self.outputs],
            continuous=ContinuousNodeConfig() if self.continuous else None,
        )
        if node_id is not None:
            node.id = node_id
        return node

    def input_spec(self, name: str) -> Optional[PortSpec]:
        return next((spec for spec in self.inputs if spec.name == name), None)


class BuiltinSpec(_SpecBase):
    kind: Literal["builtin"] = "builtin"


class WasmComponentSpec(_SpecBase):
    """A compiled WebAssembly artifact.

    Attributes:
        path: Artifact location on disk, empty for in-memory artifacts
        sha256: Digest of the artifact bytes, the compiled-module cache key
        size_bytes: Artifact size
    """

    kind: Literal["wasm"] = "wasm"
    path: str = ""
    sha256: str
    size_bytes: int = 0


class ComposedSpec(_SpecBase):
    kind: Literal["composed"] = "composed"
    composition: CompositionData
    artifact_sha256: str = ""

    def create_node(self, node_id: Optional[str] = None, display_name: Optional[str] = None) -> Node:
        node = super().create_node(node_id, display_name)
        node.composition = self.composition.model_copy(deep=True)
        return node


ComponentSpec = Annotated[
    Union[BuiltinSpec, WasmComponentSpec, ComposedSpec],
    Field(discriminator="kind"),
]
