"""Utility functions and helpers."""

from wasmflow.utils.config import WasmFlowSettings, get_config, get_settings, init_logging, load_env
from wasmflow.utils.errors import (
    CapabilityViolationError,
    ComponentError,
    CompositionError,
    ErrorCategory,
    ExecutionError,
    GraphValidationError,
    InfrastructureError,
    WasmFlowError,
)

__all__ = [
    "WasmFlowSettings",
    "get_config",
    "get_settings",
    "init_logging",
    "load_env",
    "CapabilityViolationError",
    "ComponentError",
    "CompositionError",
    "ErrorCategory",
    "ExecutionError",
    "GraphValidationError",
    "InfrastructureError",
    "WasmFlowError",
]
