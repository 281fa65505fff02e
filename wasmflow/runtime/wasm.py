"""WebAssembly runtime built on wasmtime.

Components are core WebAssembly modules that follow a small JSON-over-memory
contract. A component exports:

- ``memory``
- ``wf_alloc(size: i32) -> i32``: reserve guest memory for host-written data
- ``wf_get_info() -> i64``, ``wf_get_inputs() -> i64``,
  ``wf_get_outputs() -> i64`` and optionally ``wf_get_capabilities() -> i64``
- ``wf_execute(ptr: i32, len: i32) -> i64``
- optionally ``wf_get_continuous() -> i64`` answering ``{"continuous": true}``
  for run-until-stopped components

Every ``i64`` result packs a pointer and length as ``ptr << 32 | len`` and
refers to UTF-8 JSON in guest memory. ``wf_execute`` receives
``[[name, value], ...]`` and answers ``{"ok": [[name, value], ...]}`` or
``{"err": {"message", "input_name", "recovery_hint"}}``; values use the
``NodeValue`` wire form.

Host functions are imported from the ``wasmflow`` namespace: ``log``,
``get_temp_dir``, ``http_request``, ``file_read`` and ``file_write``. All of
them go through the calling module's ``HostContext``; in a linked composite
each plug answers to its own context, not the socket's.

CPU time is bounded with epoch interruption: a ticker thread increments the
engine epoch and each call sets a store deadline derived from its timeout.
"""

import base64
import hashlib
import json
import logging
import math
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from wasmtime import (
    Config,
    Engine,
    Func,
    FuncType,
    Linker,
    Memory,
    Module,
    Store,
    Trap,
    ValType,
    WasmtimeError,
)

from wasmflow.runtime.host_api import HostContext
from wasmflow.utils.errors import (
    ComponentLoadError,
    ComponentTrapError,
    ExecutionTimeoutError,
)

logger = logging.getLogger(__name__)

HOST_MODULE = "wasmflow"
REQUIRED_EXPORTS = ("memory", "wf_alloc", "wf_get_info", "wf_get_inputs", "wf_get_outputs", "wf_execute")
LOG_LEVEL_NAMES = {0: "trace", 1: "debug", 2: "info", 3: "warn", 4: "error"}

_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


def unpack_pointer(packed: int) -> Tuple[int, int]:
    """Split a packed ``ptr << 32 | len`` result."""
    packed &= _MASK64
    return packed >> 32, packed & _MASK32


def signature(func_type: FuncType) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Comparable form of a function type."""
    return (
        tuple(str(t) for t in func_type.params),
        tuple(str(t) for t in func_type.results),
    )


class EpochTicker:
    """Background thread advancing the engine epoch at a fixed interval."""

    def __init__(self, engine: Engine, interval: float):
        self.engine = engine
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="wasmflow-epoch", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.engine.increment_epoch()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=self.interval * 10)


class WasmRuntime:
    """Compiles modules and creates sandboxed instances.

    Args:
        max_compiled_modules: Capacity of the compiled-module LRU
        epoch_tick: Seconds between epoch increments
    """

    def __init__(self, max_compiled_modules: int = 50, epoch_tick: float = 0.01):
        config = Config()
        config.epoch_interruption = True
        self.engine = Engine(config)
        self.epoch_tick = epoch_tick
        self.max_compiled_modules = max_compiled_modules
        self._modules: "OrderedDict[str, Module]" = OrderedDict()
        self._lock = threading.Lock()
        self._ticker = EpochTicker(self.engine, epoch_tick)

    def close(self) -> None:
        self._ticker.stop()

    def deadline_ticks(self, timeout: float) -> int:
        return max(1, math.ceil(timeout / self.epoch_tick)) + 1

    def compile(self, wasm: bytes) -> Tuple[str, Module]:
        """Compile (or fetch from cache) a module.

        Returns:
            (sha256 of the bytes, compiled module)

        Raises:
            ComponentLoadError: If wasmtime rejects the bytes
        """
        digest = hashlib.sha256(wasm).hexdigest()
        with self._lock:
            module = self._modules.get(digest)
            if module is not None:
                self._modules.move_to_end(digest)
                return digest, module

        try:
            module = Module(self.engine, wasm)
        except WasmtimeError as e:
            raise ComponentLoadError(f"Failed to compile component: {e}") from e

        with self._lock:
            self._modules[digest] = module
            while len(self._modules) > self.max_compiled_modules:
                evicted, _ = self._modules.popitem(last=False)
                logger.debug("Evicted compiled module %s", evicted[:12])
        return digest, module

    def check_exports(self, module: Module) -> None:
        exported = {export.name for export in module.exports}
        missing = [name for name in REQUIRED_EXPORTS if name not in exported]
        if missing:
            raise ComponentLoadError(
                f"Component is missing required exports: {', '.join(missing)}",
                hint="Build the component against the wasmflow component interface",
            )

    def instantiate(self, module: Module, ctx: HostContext, timeout: float) -> "GuestInstance":
        return GuestInstance(self, ctx, timeout, module=module)

    def instantiate_bundle(
        self,
        plugs: List[Module],
        socket: Module,
        wiring: List[Dict[str, Any]],
        ctx: HostContext,
        timeout: float,
        plug_contexts: Optional[List[HostContext]] = None,
    ) -> "GuestInstance":
        """Link plug instances into the socket's imports and instantiate it.

        All members share one store. Each plug's host functions are bound to
        its own context in ``plug_contexts`` (the socket's ``ctx`` when
        omitted), so every member keeps its own declared and granted
        capabilities.

        Args:
            plugs: Plug modules, in bundle order
            socket: Socket module
            wiring: Entries with ``import_module``, ``import_name``, ``plug`` (index) and ``export``
        """
        return GuestInstance(
            self, ctx, timeout, module=socket, plugs=plugs, wiring=wiring, plug_contexts=plug_contexts
        )


class GuestInstance:
    """A module instance in its own store, optionally linked to plug instances.

    Attributes:
        contexts: The socket's context followed by distinct plug contexts
    """

    def __init__(
        self,
        runtime: WasmRuntime,
        ctx: HostContext,
        timeout: float,
        *,
        module: Module,
        plugs: Optional[List[Module]] = None,
        wiring: Optional[List[Dict[str, Any]]] = None,
        plug_contexts: Optional[List[HostContext]] = None,
    ):
        plugs = list(plugs or [])
        wiring = list(wiring or [])
        plug_contexts = list(plug_contexts) if plug_contexts is not None else [ctx] * len(plugs)
        if len(plug_contexts) != len(plugs):
            raise ValueError("plug_contexts must hold one context per plug")

        self.runtime = runtime
        self.ctx = ctx
        self.contexts = [ctx] + [c for c in dict.fromkeys(plug_contexts) if c is not ctx]
        self.timeout = timeout
        self.store = Store(runtime.engine)
        self.store.set_epoch_deadline(runtime.deadline_ticks(timeout))
        wired = {(entry["import_module"], entry["import_name"]) for entry in wiring}

        try:
            plug_instances = [
                self._linker(plug_ctx, plug, set()).instantiate(self.store, plug)
                for plug, plug_ctx in zip(plugs, plug_contexts)
            ]
            linker = self._linker(ctx, module, wired)
            for entry in wiring:
                item = plug_instances[entry["plug"]].exports(self.store)[entry["export"]]
                linker.define(self.store, entry["import_module"], entry["import_name"], item)
            self.instance = linker.instantiate(self.store, module)
        except Trap as e:
            raise ComponentTrapError(f"Component trapped during instantiation: {e}") from e
        except WasmtimeError as e:
            raise ComponentLoadError(f"Failed to instantiate component: {e}") from e

        self.exports = self.instance.exports(self.store)
        memory = self.exports.get("memory")
        if not isinstance(memory, Memory):
            raise ComponentLoadError("Component does not export its memory")
        self.memory = memory

    def _linker(self, ctx: HostContext, module: Module, resolved) -> Linker:
        linker = Linker(self.runtime.engine)
        self._define_host_functions(linker, ctx)
        self._define_unresolved_imports(linker, module, resolved)
        return linker

    # ------------------------------------------------------------------
    # Guest calls
    # ------------------------------------------------------------------

    def call_json(self, export_name: str, default: Any = None) -> Any:
        """Call a no-argument export returning packed JSON."""
        func = self.exports.get(export_name)
        if func is None:
            return default
        packed = self._call(func)
        return self._decode(self._read(self.store, *unpack_pointer(packed)), export_name)

    def execute(self, payload: Any) -> Dict[str, Any]:
        """Call ``wf_execute`` with a JSON payload and decode its answer."""
        data = json.dumps(payload).encode()
        ptr = self._alloc(self.store, len(data))
        self.memory.write(self.store, data, ptr)
        packed = self._call(self.exports["wf_execute"], ptr, len(data))
        result = self._decode(self._read(self.store, *unpack_pointer(packed)), "wf_execute")
        if not isinstance(result, dict) or not ("ok" in result or "err" in result):
            raise ComponentTrapError("Component returned a malformed execute result")
        return result

    def reset_deadline(self) -> None:
        self.store.set_epoch_deadline(self.runtime.deadline_ticks(self.timeout))

    def _call(self, func: Func, *args: int) -> int:
        self.reset_deadline()
        try:
            return func(self.store, *args)
        except (Trap, WasmtimeError) as e:
            if "interrupt" in str(e):
                raise ExecutionTimeoutError(
                    f"Component exceeded its {self.timeout:.1f}s execution bound"
                ) from e
            raise ComponentTrapError(f"Component trapped: {e}") from e

    def _decode(self, raw: bytes, what: str) -> Any:
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ComponentTrapError(f"Component returned invalid JSON from {what}: {e}") from e

    # ------------------------------------------------------------------
    # Memory helpers
    # ------------------------------------------------------------------

    def _read(self, store, ptr: int, length: int) -> bytes:
        return bytes(self.memory.read(store, ptr, ptr + length))

    def _alloc(self, store, size: int) -> int:
        return self.exports["wf_alloc"](store, size)

    def _write_packed(self, caller, data: bytes) -> int:
        memory = caller.get("memory")
        alloc = caller.get("wf_alloc")
        if memory is None or alloc is None:
            raise ComponentTrapError("Component must export memory and wf_alloc to receive host data")
        ptr = alloc(caller, len(data))
        memory.write(caller, data, ptr)
        return (ptr << 32) | len(data)

    @staticmethod
    def _read_caller(caller, ptr: int, length: int) -> bytes:
        memory = caller.get("memory")
        return bytes(memory.read(caller, ptr, ptr + length))

    # ------------------------------------------------------------------
    # Host functions
    # ------------------------------------------------------------------

    def _define_host_functions(self, linker: Linker, ctx: HostContext) -> None:
        i32, i64 = ValType.i32(), ValType.i64()

        def log(caller, level: int, ptr: int, length: int) -> None:
            message = self._read_caller(caller, ptr, length).decode("utf-8", "replace")
            ctx.log(LOG_LEVEL_NAMES.get(level, "info"), message)

        def get_temp_dir(caller) -> int:
            return self._write_packed(caller, ctx.scratch_dir().encode())

        def http_request(caller, ptr: int, length: int) -> int:
            request = json.loads(self._read_caller(caller, ptr, length))
            result = ctx.http_request(
                request.get("method", "GET"),
                request["url"],
                request.get("headers"),
                request.get("body"),
            )
            return self._write_packed(caller, json.dumps(result).encode())

        def file_read(caller, ptr: int, length: int) -> int:
            path = self._read_caller(caller, ptr, length).decode("utf-8")
            result = ctx.read_file(path)
            if "ok" in result:
                result = {"ok": base64.b64encode(result["ok"]).decode("ascii")}
            return self._write_packed(caller, json.dumps(result).encode())

        def file_write(caller, ptr: int, length: int, data_ptr: int, data_length: int) -> int:
            path = self._read_caller(caller, ptr, length).decode("utf-8")
            data = self._read_caller(caller, data_ptr, data_length)
            return self._write_packed(caller, json.dumps(ctx.write_file(path, data)).encode())

        definitions: List[Tuple[str, FuncType, Callable]] = [
            ("log", FuncType([i32, i32, i32], []), log),
            ("get_temp_dir", FuncType([], [i64]), get_temp_dir),
            ("http_request", FuncType([i32, i32], [i64]), http_request),
            ("file_read", FuncType([i32, i32], [i64]), file_read),
            ("file_write", FuncType([i32, i32, i32, i32], [i64]), file_write),
        ]
        for name, func_type, func in definitions:
            linker.define_func(HOST_MODULE, name, func_type, func, access_caller=True)

    @staticmethod
    def _define_unresolved_imports(linker: Linker, module: Module, resolved) -> None:
        """Satisfy foreign function imports with stubs that trap when called.

        A socket can be loaded and introspected on its own; its imports only
        become real functions once a composition wires plugs into them.
        """
        seen = set(resolved)
        for item in module.imports:
            key = (item.module, item.name)
            if item.module == HOST_MODULE or key in seen or not isinstance(item.type, FuncType):
                continue
            seen.add(key)

            def unresolved(*args, _key=key):
                raise ComponentTrapError(f"Unresolved import {_key[0]}.{_key[1]} was called")

            linker.define_func(item.module, item.name, item.type, unresolved)
