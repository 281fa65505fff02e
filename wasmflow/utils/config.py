"""Configuration utilities for loading environment variables and settings."""

import logging
import os
import tempfile
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "WASMFLOW_"


def load_env(env_file: Optional[str] = None) -> None:
    """Load environment variables from .env file.

    This function loads variables from a .env file into the environment.
    It will search for .env in the current directory and parent directories
    if no path is specified.

    Args:
        env_file: Optional path to .env file. If not specified, searches
                 for .env in current and parent directories.

    Example:
        >>> from wasmflow.utils.config import load_env, get_settings
        >>> load_env()
        >>> settings = get_settings()
        >>> settings.execution_timeout
        30.0
    """
    from dotenv import load_dotenv

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()


class WasmFlowSettings(BaseModel):
    """Runtime settings, overridable with WASMFLOW_* environment variables.

    Attributes:
        execution_timeout: Upper bound in seconds for one component invocation
        composition_timeout: Upper bound in seconds for one composition
        max_component_size: Largest accepted artifact in bytes
        max_compiled_modules: Compiled-module LRU capacity
        max_concurrency: Concurrent invocations per execution wave
        continuous_grace_period: Cooperative shutdown window in seconds
        continuous_abort_timeout: Teardown window after a forced abort
        default_interval_ms: Continuous iteration interval when none is wired
        scratch_root: Parent directory of per-component scratch directories
        epoch_tick: Seconds between engine epoch increments
        http_timeout: Timeout for capability-gated outbound requests
        log_level: Level used by init_logging
    """

    execution_timeout: float = Field(default=30.0, gt=0)
    composition_timeout: float = Field(default=60.0, gt=0)
    max_component_size: int = Field(default=50 * 1024 * 1024, gt=0)
    max_compiled_modules: int = Field(default=50, ge=1)
    max_concurrency: int = Field(default=10, ge=1)
    continuous_grace_period: float = Field(default=1.5, gt=0)
    continuous_abort_timeout: float = Field(default=0.5, gt=0)
    default_interval_ms: int = Field(default=100, ge=1)
    scratch_root: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "wasmflow"))
    epoch_tick: float = Field(default=0.01, gt=0)
    http_timeout: float = Field(default=10.0, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "WasmFlowSettings":
        """Build settings from WASMFLOW_* environment variables.

        Unset variables fall back to the field defaults; values are
        validated and coerced by pydantic.
        """
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls(**values)


def get_settings() -> WasmFlowSettings:
    """Get settings from the current environment.

    Returns:
        WasmFlowSettings instance
    """
    return WasmFlowSettings.from_env()


def get_config(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a raw configuration value from environment.

    Args:
        key: Configuration key without the WASMFLOW_ prefix
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    return os.getenv(ENV_PREFIX + key.upper(), default)


def init_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding WasmFlow.

    Args:
        level: Level name; defaults to the WASMFLOW_LOG_LEVEL setting
    """
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
