"""Pytest configuration and fixtures for WasmFlow tests."""

import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest
from wasmtime import wat2wasm

from wasmflow.builtin import register_builtins
from wasmflow.core.graph import NodeGraph
from wasmflow.core.types import NodeValue
from wasmflow.runtime.host import ComponentHost
from wasmflow.utils.config import WasmFlowSettings

HOST_IMPORTS = {
    "log": '(import "wasmflow" "log" (func $log (param i32 i32 i32)))',
    "get_temp_dir": '(import "wasmflow" "get_temp_dir" (func $get_temp_dir (result i64)))',
    "http_request": '(import "wasmflow" "http_request" (func $http_request (param i32 i32) (result i64)))',
    "file_read": '(import "wasmflow" "file_read" (func $file_read (param i32 i32) (result i64)))',
    "file_write": (
        '(import "wasmflow" "file_write" '
        "(func $file_write (param i32 i32 i32 i32) (result i64)))"
    ),
}

DATA_START = 1024


class DataSegments:
    """Lays out constant byte strings in guest memory."""

    def __init__(self):
        self.offset = DATA_START
        self.segments: List[Tuple[int, bytes]] = []

    def add(self, data: bytes) -> Tuple[int, int]:
        ptr = self.offset
        self.segments.append((ptr, data))
        self.offset = (ptr + len(data) + 7) // 8 * 8
        return ptr, len(data)

    def packed(self, value: Any) -> int:
        data = value if isinstance(value, bytes) else json.dumps(value).encode()
        ptr, length = self.add(data)
        return (ptr << 32) | length

    def to_wat(self) -> str:
        lines = []
        for ptr, data in self.segments:
            escaped = "".join("\\%02x" % byte for byte in data)
            lines.append(f'  (data (i32.const {ptr}) "{escaped}")')
        return "\n".join(lines)


def component_wat(
    name: str = "Test Component",
    inputs: Sequence[Dict[str, Any]] = (),
    outputs: Sequence[Dict[str, Any]] = (),
    result: Optional[Dict[str, Any]] = None,
    capabilities: Optional[List[str]] = None,
    continuous: bool = False,
    host_imports: Sequence[str] = (),
    imports: Sequence[str] = (),
    before: Optional[Callable[[DataSegments], str]] = None,
    body: Optional[str] = None,
    extra: str = "",
) -> str:
    """Build WAT text for a module following the component contract.

    Args:
        result: JSON answer of ``wf_execute``; ``{"ok": []}`` by default
        host_imports: Names from ``HOST_IMPORTS`` to import
        imports: Additional raw import declarations
        before: Returns instructions run by ``wf_execute`` before answering
        body: Replaces the whole ``wf_execute`` body (must leave an i64)
        extra: Additional module fields, e.g. exported functions
    """
    data = DataSegments()
    info = data.packed({"name": name, "version": "1.0.0", "description": f"{name} for tests", "category": "Test"})
    inputs_ptr = data.packed(list(inputs))
    outputs_ptr = data.packed(list(outputs))

    metadata = [
        f'  (func (export "wf_get_info") (result i64) (i64.const {info}))',
        f'  (func (export "wf_get_inputs") (result i64) (i64.const {inputs_ptr}))',
        f'  (func (export "wf_get_outputs") (result i64) (i64.const {outputs_ptr}))',
    ]
    if capabilities is not None:
        metadata.append(
            f'  (func (export "wf_get_capabilities") (result i64) (i64.const {data.packed(capabilities)}))'
        )
    if continuous:
        metadata.append(
            f'  (func (export "wf_get_continuous") (result i64) (i64.const {data.packed({"continuous": True})}))'
        )

    if body is None:
        prelude = before(data) if before is not None else ""
        body = f"{prelude}\n    (i64.const {data.packed(result or {'ok': []})})"

    heap = (data.offset + 1023) // 1024 * 1024
    declared_imports = [HOST_IMPORTS[name] for name in host_imports] + list(imports)
    return "\n".join(
        ["(module"]
        + ["  " + line for line in declared_imports]
        + [
            '  (memory (export "memory") 4)',
            f"  (global $heap (mut i32) (i32.const {heap}))",
            '  (func (export "wf_alloc") (param $size i32) (result i32)',
            "    (local $ptr i32)",
            "    (local.set $ptr (global.get $heap))",
            "    (global.set $heap",
            "      (i32.and (i32.add (i32.add (global.get $heap) (local.get $size)) (i32.const 7)) (i32.const -8)))",
            "    (local.get $ptr))",
        ]
        + metadata
        + [
            '  (func (export "wf_execute") (param $ptr i32) (param $len i32) (result i64)',
            f"    {body})",
            extra,
            data.to_wat(),
            ")",
        ]
    )


def component_wasm(**kwargs: Any) -> bytes:
    """Compile ``component_wat`` output to a binary module."""
    return bytes(wat2wasm(component_wat(**kwargs)))


def call_with_json(func: str, payload: Any) -> Callable[[DataSegments], str]:
    """``before`` hook calling a two-argument host import with a JSON payload."""

    def hook(data: DataSegments) -> str:
        ptr, length = data.add(json.dumps(payload).encode() if not isinstance(payload, str) else payload.encode())
        return f"(drop (call ${func} (i32.const {ptr}) (i32.const {length})))"

    return hook


def ok(*pairs: Tuple[str, NodeValue]) -> Dict[str, Any]:
    return {"ok": [[name, value.model_dump()] for name, value in pairs]}


class RecordingTransport:
    """httpx mock transport that records every request it receives."""

    def __init__(self, status: int = 200, text: str = "pong"):
        self.requests: List[httpx.Request] = []
        self.status = status
        self.text = text

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, text=self.text)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def settings(tmp_path):
    """Settings with short bounds and a per-test scratch root."""
    return WasmFlowSettings(
        execution_timeout=5.0,
        composition_timeout=10.0,
        continuous_grace_period=0.5,
        continuous_abort_timeout=0.3,
        scratch_root=str(tmp_path / "scratch"),
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def host(settings, transport):
    """Component host with every builtin registered."""
    host = ComponentHost(settings=settings, http_client_factory=transport.client)
    register_builtins(host)
    yield host
    host.close()


@pytest.fixture
def graph():
    return NodeGraph(name="test")
