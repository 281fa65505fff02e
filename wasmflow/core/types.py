"""Port types and typed values.

Port types form a small closed set written as strings: ``u32``, ``i32``,
``f32``, ``string``, ``bool``, ``binary``, ``any`` and homogeneous lists
``list<T>``. Values crossing ports are ``NodeValue`` instances whose wire
form is ``{"type": kind, "value": payload}``; binary payloads travel as
base64 and list payloads as lists of wire values.

Example:
    >>> from wasmflow.core.types import NodeValue, types_compatible
    >>> types_compatible("f32", "any")
    True
    >>> NodeValue.f32(8.0).model_dump()
    {'type': 'f32', 'value': 8.0}
"""

import base64
import hashlib
import json
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, model_serializer, model_validator

ANY = "any"
SCALAR_TYPES = ("u32", "i32", "f32", "string", "bool", "binary")

U32_MAX = 2**32 - 1
I32_MIN = -(2**31)
I32_MAX = 2**31 - 1


class ValueKind(str, Enum):
    """Runtime kinds a NodeValue can hold."""

    U32 = "u32"
    I32 = "i32"
    F32 = "f32"
    STRING = "string"
    BOOL = "bool"
    BINARY = "binary"
    LIST = "list"


def normalize_type(type_name: str) -> str:
    """Validate a port type string and return its canonical spelling.

    Raises:
        ValueError: If the type is not part of the closed set
    """
    text = type_name.strip().lower().replace(" ", "")
    if text in SCALAR_TYPES or text == ANY:
        return text
    if text.startswith("list<") and text.endswith(">"):
        return f"list<{normalize_type(text[5:-1])}>"
    raise ValueError(f"Unknown port type '{type_name}'")


def list_item_type(type_name: str) -> Optional[str]:
    """Element type of a ``list<T>`` type, or None for non-list types."""
    if type_name.startswith("list<"):
        return type_name[5:-1]
    return None


def types_compatible(source: str, target: str) -> bool:
    """Check whether an output of type `source` may feed an input of type `target`.

    ``any`` on either side is compatible with everything, lists compare
    element types recursively, every other pair must match exactly.
    """
    if source == ANY or target == ANY:
        return True
    source_item = list_item_type(source)
    target_item = list_item_type(target)
    if source_item is not None and target_item is not None:
        return types_compatible(source_item, target_item)
    return source == target


class NodeValue(BaseModel):
    """A typed value held by a port.

    Attributes:
        type: Runtime kind of the value
        value: Python payload (int, float, str, bool, bytes or list of NodeValue)
    """

    model_config = ConfigDict(frozen=True)

    type: ValueKind
    value: Any

    @model_validator(mode="before")
    @classmethod
    def _decode_wire(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "type" not in data:
            return data
        kind = data["type"]
        kind = kind.value if isinstance(kind, ValueKind) else kind
        value = data.get("value")
        if kind == "binary" and isinstance(value, str):
            value = base64.b64decode(value)
        elif kind == "list" and isinstance(value, list):
            value = [item if isinstance(item, NodeValue) else NodeValue.model_validate(item) for item in value]
        elif kind == "f32" and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        return {"type": kind, "value": value}

    @model_validator(mode="after")
    def _check_payload(self) -> "NodeValue":
        kind, value = self.type, self.value
        if kind in (ValueKind.U32, ValueKind.I32):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{kind.value} value must be an integer")
            low, high = (0, U32_MAX) if kind == ValueKind.U32 else (I32_MIN, I32_MAX)
            if not low <= value <= high:
                raise ValueError(f"{value} is out of range for {kind.value}")
        elif kind == ValueKind.F32:
            if not isinstance(value, float):
                raise ValueError("f32 value must be a number")
        elif kind == ValueKind.STRING:
            if not isinstance(value, str):
                raise ValueError("string value must be text")
        elif kind == ValueKind.BOOL:
            if not isinstance(value, bool):
                raise ValueError("bool value must be true or false")
        elif kind == ValueKind.BINARY:
            if not isinstance(value, (bytes, bytearray)):
                raise ValueError("binary value must be bytes")
        elif kind == ValueKind.LIST:
            if not isinstance(value, list) or not all(isinstance(item, NodeValue) for item in value):
                raise ValueError("list value must contain NodeValue items")
            if len({item.data_type for item in value}) > 1:
                raise ValueError("list values must be homogeneous")
        return self

    @model_serializer
    def _to_wire(self) -> Dict[str, Any]:
        if self.type == ValueKind.BINARY:
            return {"type": "binary", "value": base64.b64encode(bytes(self.value)).decode("ascii")}
        if self.type == ValueKind.LIST:
            return {"type": "list", "value": [item.model_dump() for item in self.value]}
        return {"type": self.type.value, "value": self.value}

    # Constructors

    @classmethod
    def u32(cls, value: int) -> "NodeValue":
        return cls(type=ValueKind.U32, value=value)

    @classmethod
    def i32(cls, value: int) -> "NodeValue":
        return cls(type=ValueKind.I32, value=value)

    @classmethod
    def f32(cls, value: float) -> "NodeValue":
        return cls(type=ValueKind.F32, value=float(value))

    @classmethod
    def string(cls, value: str) -> "NodeValue":
        return cls(type=ValueKind.STRING, value=value)

    @classmethod
    def boolean(cls, value: bool) -> "NodeValue":
        return cls(type=ValueKind.BOOL, value=value)

    @classmethod
    def binary(cls, value: bytes) -> "NodeValue":
        return cls(type=ValueKind.BINARY, value=bytes(value))

    @classmethod
    def list_of(cls, items: Iterable["NodeValue"]) -> "NodeValue":
        return cls(type=ValueKind.LIST, value=list(items))

    @property
    def data_type(self) -> str:
        """Port type string describing this value."""
        if self.type == ValueKind.LIST:
            item_type = self.value[0].data_type if self.value else ANY
            return f"list<{item_type}>"
        return self.type.value

    def matches(self, port_type: str) -> bool:
        """Check whether this value may be stored in a port of `port_type`."""
        if port_type == ANY:
            return True
        if self.type == ValueKind.LIST:
            item_type = list_item_type(port_type)
            if item_type is None:
                return False
            return all(item.matches(item_type) for item in self.value)
        return self.type.value == port_type

    def display(self) -> str:
        """Short human readable rendering used by display nodes."""
        if self.type == ValueKind.BINARY:
            return f"<{len(self.value)} bytes>"
        if self.type == ValueKind.LIST:
            return "[" + ", ".join(item.display() for item in self.value) + "]"
        if self.type == ValueKind.BOOL:
            return "true" if self.value else "false"
        return str(self.value)


def fingerprint_inputs(inputs: List[Tuple[str, NodeValue]]) -> str:
    """Stable SHA-256 digest of an input list, independent of ordering."""
    content = json.dumps(
        sorted([name, value.model_dump()] for name, value in inputs),
        sort_keys=True,
    )
    return hashlib.sha256(content.encode()).hexdigest()
