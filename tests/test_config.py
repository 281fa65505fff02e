"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from wasmflow.utils.config import WasmFlowSettings, get_config, load_env


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("WASMFLOW_EXECUTION_TIMEOUT", raising=False)
        settings = WasmFlowSettings.from_env()
        assert settings.execution_timeout == 30.0
        assert settings.continuous_grace_period == 1.5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WASMFLOW_EXECUTION_TIMEOUT", "2.5")
        monkeypatch.setenv("WASMFLOW_MAX_CONCURRENCY", "3")

        settings = WasmFlowSettings.from_env()

        assert settings.execution_timeout == 2.5
        assert settings.max_concurrency == 3

    def test_invalid_value_rejected(self, monkeypatch):
        monkeypatch.setenv("WASMFLOW_EXECUTION_TIMEOUT", "-1")
        with pytest.raises(ValidationError):
            WasmFlowSettings.from_env()

    def test_env_file(self, monkeypatch, tmp_path):
        # Teardown removes whatever load_env sets.
        monkeypatch.setenv("WASMFLOW_COMPOSITION_TIMEOUT", "1")
        monkeypatch.delenv("WASMFLOW_COMPOSITION_TIMEOUT")
        env_file = tmp_path / ".env"
        env_file.write_text("WASMFLOW_COMPOSITION_TIMEOUT=12\n")

        load_env(str(env_file))

        assert get_config("composition_timeout") == "12"
        assert WasmFlowSettings.from_env().composition_timeout == 12.0
