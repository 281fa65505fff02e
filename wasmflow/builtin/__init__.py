"""Builtin components."""

from typing import List

from wasmflow.builtin.base import BuiltinComponent
from wasmflow.builtin.constants import (
    ConstantBool,
    ConstantF32,
    ConstantI32,
    ConstantString,
    ConstantU32,
)
from wasmflow.builtin.continuous import CombinerComponent, TimerComponent
from wasmflow.builtin.math import (
    AddComponent,
    DivideComponent,
    MultiplyComponent,
    SubtractComponent,
)
from wasmflow.builtin.views import DisplayComponent

BUILTIN_COMPONENTS = [
    ConstantF32,
    ConstantU32,
    ConstantI32,
    ConstantString,
    ConstantBool,
    AddComponent,
    SubtractComponent,
    MultiplyComponent,
    DivideComponent,
    DisplayComponent,
    TimerComponent,
    CombinerComponent,
]


def register_builtins(host) -> List[BuiltinComponent]:
    """Register one instance of every builtin component with a host.

    Returns:
        The registered instances, in registration order
    """
    components = [cls() for cls in BUILTIN_COMPONENTS]
    for component in components:
        host.register_builtin(component)
    return components


__all__ = [
    "BuiltinComponent",
    "BUILTIN_COMPONENTS",
    "register_builtins",
    "AddComponent",
    "SubtractComponent",
    "MultiplyComponent",
    "DivideComponent",
    "ConstantF32",
    "ConstantU32",
    "ConstantI32",
    "ConstantString",
    "ConstantBool",
    "DisplayComponent",
    "TimerComponent",
    "CombinerComponent",
]
