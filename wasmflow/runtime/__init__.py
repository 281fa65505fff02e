"""Sandboxed component runtime: capabilities, host, continuous tasks, composition."""

from wasmflow.runtime.capabilities import (
    Allow,
    Capability,
    CapabilityGrant,
    CapabilityValidator,
    Deny,
    DenyReason,
    Operation,
    RiskLevel,
    check,
    parse_capabilities,
)
from wasmflow.runtime.host_api import HostContext
from wasmflow.runtime.wasm import WasmRuntime
from wasmflow.runtime.host import ComponentHost, ComponentSession
from wasmflow.runtime.continuous import ContinuousController
from wasmflow.runtime.composition import CompositionResult, CompositionService

__all__ = [
    "Allow",
    "Capability",
    "CapabilityGrant",
    "CapabilityValidator",
    "Deny",
    "DenyReason",
    "Operation",
    "RiskLevel",
    "check",
    "parse_capabilities",
    "HostContext",
    "WasmRuntime",
    "ComponentHost",
    "ComponentSession",
    "ContinuousController",
    "CompositionResult",
    "CompositionService",
]
