"""Component host: registry, grants and sandboxed invocation.

The host owns the registry mapping component identity to a loaded artifact
and the capability grants the user approved for each component. It exposes
one uniform invocation contract for every component variant::

    outputs = await host.execute(component_id, [("a", NodeValue.f32(1.0))])

Each one-shot invocation gets a fresh sandbox (a new wasmtime store and
instance, or a fresh builtin call) and a fresh ``HostContext``, so no state
survives between independent invocations. Continuous components instead use
a ``ComponentSession``, which pins one sandbox for the lifetime of a single
controller task.

Example:
    >>> host = ComponentHost()
    >>> spec = await host.load_component("components/http_fetch.wasm")
    >>> host.grant(spec.id, ["network:api.example.com"])
    >>> outputs = await host.execute(spec.id, [("url", NodeValue.string(url))])
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from wasmflow.core.component import (
    BuiltinSpec,
    ComponentInfo,
    ComponentSpec,
    ComposedSpec,
    PortSpec,
    WasmComponentSpec,
)
from wasmflow.core.types import NodeValue
from wasmflow.runtime.capabilities import (
    Capability,
    CapabilityGrant,
    CapabilityValidator,
    parse_capabilities,
)
from wasmflow.runtime.bundle import read_bundle
from wasmflow.runtime.host_api import HostContext, HttpClientFactory
from wasmflow.runtime.wasm import GuestInstance, WasmRuntime
from wasmflow.utils.config import WasmFlowSettings, get_settings
from wasmflow.utils.errors import (
    CapabilityViolationError,
    ComponentError,
    ComponentLoadError,
    ComponentNotFoundError,
    ComponentReportedError,
    ComponentTrapError,
    ExecutionError,
    ExecutionTimeoutError,
    InvalidCapabilityError,
    InvalidInputTypeError,
    MissingInputError,
)

logger = logging.getLogger(__name__)

Inputs = List[Tuple[str, NodeValue]]


@dataclass
class RegisteredComponent:
    """Registry entry: the component spec plus whatever executes it."""

    spec: ComponentSpec
    builtin: Any = None
    wasm: Optional[bytes] = None
    bundle: Optional[bytes] = None


class ComponentHost:
    """Registry of loaded components and their capability grants.

    Args:
        settings: Runtime settings; read from the environment when omitted
        runtime: WebAssembly runtime; created from settings when omitted
        validator: Capability validator used by every host context
        http_client_factory: Builds the httpx client used for outbound requests
    """

    def __init__(
        self,
        settings: Optional[WasmFlowSettings] = None,
        runtime: Optional[WasmRuntime] = None,
        validator: Optional[CapabilityValidator] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
    ):
        self.settings = settings or get_settings()
        self.runtime = runtime or WasmRuntime(
            max_compiled_modules=self.settings.max_compiled_modules,
            epoch_tick=self.settings.epoch_tick,
        )
        self.validator = validator or CapabilityValidator()
        self.http_client_factory = http_client_factory
        self._components: Dict[str, RegisteredComponent] = {}
        self._grants: Dict[str, CapabilityGrant] = {}
        self._lock = threading.RLock()

    def close(self) -> None:
        self.runtime.close()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_builtin(self, component: Any) -> BuiltinSpec:
        """Register a builtin component instance (see ``wasmflow.builtin``)."""
        with self._lock:
            self._components[component.spec.id] = RegisteredComponent(spec=component.spec, builtin=component)
        return component.spec

    def register_composed(self, spec: ComposedSpec, bundle: bytes) -> ComposedSpec:
        """Register a composition, replacing any earlier one with the same id."""
        with self._lock:
            replaced = spec.id in self._components
            self._components[spec.id] = RegisteredComponent(spec=spec, bundle=bundle)
        logger.info("%s composite component %s", "Replaced" if replaced else "Registered", spec.id)
        return spec

    async def load_component(self, path: str, component_id: Optional[str] = None) -> WasmComponentSpec:
        """Load a compiled component from disk and register it.

        The component id defaults to ``user:<file stem>``.

        Raises:
            ComponentLoadError: If the file is missing, too large or not a valid component
        """
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise ComponentLoadError(f"Cannot read component '{path}': {e}") from e
        if size > self.settings.max_component_size:
            raise ComponentLoadError(
                f"Component '{path}' is {size} bytes, above the "
                f"{self.settings.max_component_size} byte limit"
            )
        wasm = await asyncio.to_thread(Path(path).read_bytes)
        component_id = component_id or f"user:{Path(path).stem}"
        return await self.load_bytes(wasm, component_id, path=str(path))

    async def load_bytes(self, wasm: bytes, component_id: str, path: str = "") -> WasmComponentSpec:
        """Compile, introspect and register component bytes."""
        if len(wasm) > self.settings.max_component_size:
            raise ComponentLoadError(f"Component '{component_id}' exceeds the size limit")
        spec = await asyncio.to_thread(self._introspect, wasm, component_id, path)
        with self._lock:
            self._components[component_id] = RegisteredComponent(spec=spec, wasm=wasm)
        logger.info("Loaded component %s (%s, %d bytes)", component_id, spec.info.name, len(wasm))
        return spec

    def unregister(self, component_id: str) -> None:
        with self._lock:
            self._components.pop(component_id, None)
            self._grants.pop(component_id, None)

    def has_component(self, component_id: str) -> bool:
        with self._lock:
            return component_id in self._components

    def get_spec(self, component_id: str) -> ComponentSpec:
        return self._entry(component_id).spec

    def list_components(self) -> List[ComponentSpec]:
        with self._lock:
            return [entry.spec for entry in self._components.values()]

    def get_info(self, component_id: str) -> ComponentInfo:
        return self.get_spec(component_id).info

    def get_inputs(self, component_id: str) -> List[PortSpec]:
        return list(self.get_spec(component_id).inputs)

    def get_outputs(self, component_id: str) -> List[PortSpec]:
        return list(self.get_spec(component_id).outputs)

    def get_capabilities(self, component_id: str) -> List[str]:
        return list(self.get_spec(component_id).capabilities)

    def get_artifact(self, component_id: str) -> bytes:
        """Raw artifact bytes of a WebAssembly or composed component."""
        entry = self._entry(component_id)
        artifact = entry.wasm if entry.wasm is not None else entry.bundle
        if artifact is None:
            raise ComponentLoadError(f"Component '{component_id}' has no binary artifact")
        return artifact

    def _entry(self, component_id: str) -> RegisteredComponent:
        with self._lock:
            entry = self._components.get(component_id)
            if entry is None:
                available = ", ".join(sorted(self._components)) or "none"
                raise ComponentNotFoundError(
                    f"Component '{component_id}' is not registered. Available: {available}",
                    component_id=component_id,
                )
            return entry

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant(self, component_id: str, capabilities: Iterable[str]) -> CapabilityGrant:
        """Record the capabilities the user approved for a component.

        Replaces any previous grant for the same component.

        Raises:
            InvalidCapabilityError: If a capability string is malformed
        """
        capabilities = list(capabilities)
        parse_capabilities(capabilities)
        grant = CapabilityGrant(component_id=component_id, capabilities=capabilities)
        with self._lock:
            self._grants[component_id] = grant
        logger.info("Granted %s to %s", ", ".join(capabilities) or "nothing", component_id)
        return grant

    def revoke(self, component_id: str) -> None:
        with self._lock:
            self._grants.pop(component_id, None)

    def get_grant(self, component_id: str) -> Optional[CapabilityGrant]:
        with self._lock:
            return self._grants.get(component_id)

    def granted_capabilities(self, component_id: str) -> FrozenSet[Capability]:
        grant = self.get_grant(component_id)
        return grant.parsed() if grant is not None else frozenset()

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def execute(
        self,
        component_id: str,
        inputs: Inputs,
        granted: Optional[Iterable[Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, NodeValue]:
        """Run one invocation of a component in a fresh sandbox.

        Args:
            component_id: Registered component identity
            inputs: Ordered (name, value) pairs
            granted: Capabilities granted for this call; the stored grant when omitted
            timeout: Upper bound in seconds; the configured default when omitted

        Returns:
            Output values by port name

        Raises:
            ComponentNotFoundError: Unknown component
            MissingInputError: A required input has no value
            InvalidInputTypeError: An input does not match its declared type
            ComponentReportedError: The component returned an error
            CapabilityViolationError: The component attempted a denied effect
            ExecutionTimeoutError: The invocation exceeded its time bound
            ComponentTrapError: The sandbox trapped or failed unexpectedly
        """
        entry = self._entry(component_id)
        timeout = timeout or self.settings.execution_timeout
        validated = validate_inputs(entry.spec, inputs)
        granted_set = self._resolve_grants(component_id, granted)

        if isinstance(entry.spec, ComposedSpec):
            raise ExecutionError(
                f"Composite component '{component_id}' runs through the execution engine",
                component_id=component_id,
                hint="Execute the composite node as part of a graph",
            )

        ctx = self._new_context(entry.spec, granted_set)
        try:
            if entry.builtin is not None:
                return await asyncio.wait_for(
                    _run_builtin(entry.builtin, entry.spec, validated, ctx), timeout
                )
            return await asyncio.wait_for(
                asyncio.to_thread(self._run_wasm_once, entry, validated, ctx, timeout),
                timeout + self.settings.epoch_tick * 10,
            )
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(
                f"Component '{component_id}' did not finish within {timeout:.1f}s",
                component_id=component_id,
            ) from None
        finally:
            ctx.close()

    async def execute_bundle(
        self,
        component_id: str,
        inputs: Inputs,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, NodeValue]:
        """Run a composite's socket linked against its plugs.

        The socket sees its own declared ports, and its wired imports call
        into live plug instances in the same sandbox. Socket and plugs each
        run under their own declared capabilities and stored grants.

        Args:
            component_id: Registered composed component identity
            inputs: Ordered (name, value) pairs for the socket's inputs

        Raises:
            ExecutionError: The component is not a composition
            CapabilityViolationError: The socket or a plug attempted a denied effect
            ExecutionTimeoutError: The invocation exceeded its time bound
        """
        entry = self._entry(component_id)
        if entry.bundle is None:
            raise ExecutionError(f"Component '{component_id}' is not a composition", component_id=component_id)
        timeout = timeout or self.settings.execution_timeout
        manifest, socket_wasm, plug_wasms = read_bundle(entry.bundle)
        socket_spec = self.get_spec(manifest["socket"]["component_id"])
        plug_specs = [self.get_spec(plug["component_id"]) for plug in manifest["plugs"]]
        validated = validate_inputs(socket_spec, inputs)

        socket_ctx = self._new_context(socket_spec, self.granted_capabilities(socket_spec.id))
        plug_contexts = [self._new_context(spec, self.granted_capabilities(spec.id)) for spec in plug_specs]
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self._run_bundle_once,
                    socket_spec,
                    socket_wasm,
                    plug_wasms,
                    manifest["wiring"],
                    validated,
                    socket_ctx,
                    plug_contexts,
                    timeout,
                ),
                timeout + self.settings.epoch_tick * 10,
            )
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(
                f"Composite '{component_id}' did not finish within {timeout:.1f}s",
                component_id=component_id,
            ) from None
        finally:
            for ctx in [socket_ctx] + plug_contexts:
                ctx.close()

    def open_session(self, component_id: str) -> "ComponentSession":
        """Pin one sandbox for a continuous component."""
        return ComponentSession(self, self._entry(component_id))

    def _resolve_grants(self, component_id: str, granted: Optional[Iterable[Any]]) -> FrozenSet[Capability]:
        if granted is None:
            return self.granted_capabilities(component_id)
        return parse_capabilities(granted)

    def _new_context(self, spec: ComponentSpec, granted: FrozenSet[Capability]) -> HostContext:
        return HostContext(
            spec.id,
            parse_capabilities(spec.capabilities),
            granted,
            scratch_root=self.settings.scratch_root,
            http_client_factory=self.http_client_factory,
            http_timeout=self.settings.http_timeout,
            validator=self.validator,
        )

    def _run_wasm_once(
        self, entry: RegisteredComponent, inputs: Inputs, ctx: HostContext, timeout: float
    ) -> Dict[str, NodeValue]:
        _, module = self.runtime.compile(entry.wasm)
        instance = self.runtime.instantiate(module, ctx, timeout)
        return _invoke_guest(instance, entry.spec, inputs)

    def _run_bundle_once(
        self,
        socket_spec: ComponentSpec,
        socket_wasm: bytes,
        plug_wasms: List[bytes],
        wiring: List[Dict[str, Any]],
        inputs: Inputs,
        ctx: HostContext,
        plug_contexts: List[HostContext],
        timeout: float,
    ) -> Dict[str, NodeValue]:
        _, socket = self.runtime.compile(socket_wasm)
        plugs = [self.runtime.compile(wasm)[1] for wasm in plug_wasms]
        instance = self.runtime.instantiate_bundle(plugs, socket, wiring, ctx, timeout, plug_contexts)
        return _invoke_guest(instance, socket_spec, inputs)

    def _introspect(self, wasm: bytes, component_id: str, path: str) -> WasmComponentSpec:
        digest, module = self.runtime.compile(wasm)
        self.runtime.check_exports(module)
        with HostContext(
            component_id, frozenset(), frozenset(), scratch_root=self.settings.scratch_root
        ) as ctx:
            instance = self.runtime.instantiate(module, ctx, self.settings.execution_timeout)
            try:
                info = ComponentInfo.model_validate(instance.call_json("wf_get_info"))
                inputs = [PortSpec.model_validate(p) for p in instance.call_json("wf_get_inputs")]
                outputs = [PortSpec.model_validate(p) for p in instance.call_json("wf_get_outputs")]
                capabilities = list(instance.call_json("wf_get_capabilities", default=None) or [])
                parse_capabilities(capabilities)
                continuous = bool((instance.call_json("wf_get_continuous", default=None) or {}).get("continuous"))
            except (ValidationError, InvalidCapabilityError, TypeError, ValueError) as e:
                raise ComponentLoadError(f"Component '{component_id}' has invalid metadata: {e}") from e
            except ComponentError as e:
                raise ComponentLoadError(f"Component '{component_id}' failed to describe itself: {e}") from e
        return WasmComponentSpec(
            id=component_id,
            info=info,
            inputs=inputs,
            outputs=outputs,
            capabilities=capabilities,
            continuous=continuous,
            path=path,
            sha256=digest,
            size_bytes=len(wasm),
        )


class ComponentSession:
    """A sandbox pinned to one continuous controller task.

    State kept by the component survives between iterations of this session
    only; every iteration is still input-validated and capability-checked.
    """

    def __init__(self, host: ComponentHost, entry: RegisteredComponent):
        self.host = host
        self.entry = entry
        self.spec = entry.spec
        self._ctx = host._new_context(entry.spec, frozenset())
        self._instance: Optional[GuestInstance] = None
        self._builtin = entry.builtin.fresh() if entry.builtin is not None else None
        self._lock = asyncio.Lock()
        self.closed = False

    async def execute(self, inputs: Inputs, granted: Optional[Iterable[Any]] = None) -> Dict[str, NodeValue]:
        """Run one iteration with the current grants."""
        if self.closed:
            raise ExecutionError(f"Session for '{self.spec.id}' is closed", component_id=self.spec.id)
        validated = validate_inputs(self.spec, inputs)
        self._ctx.update_grants(self.host._resolve_grants(self.spec.id, granted))
        timeout = self.host.settings.execution_timeout
        async with self._lock:
            try:
                if self._builtin is not None:
                    return await asyncio.wait_for(
                        _run_builtin(self._builtin, self.spec, validated, self._ctx), timeout
                    )
                return await asyncio.wait_for(
                    asyncio.to_thread(self._run_wasm, validated, timeout),
                    timeout + self.host.settings.epoch_tick * 10,
                )
            except asyncio.TimeoutError:
                raise ExecutionTimeoutError(
                    f"Iteration of '{self.spec.id}' did not finish within {timeout:.1f}s",
                    component_id=self.spec.id,
                ) from None

    def _run_wasm(self, inputs: Inputs, timeout: float) -> Dict[str, NodeValue]:
        if self._instance is None:
            _, module = self.host.runtime.compile(self.entry.wasm)
            self._instance = self.host.runtime.instantiate(module, self._ctx, timeout)
        return _invoke_guest(self._instance, self.spec, inputs)

    def close(self) -> None:
        """Release the sandbox and host resources."""
        self.closed = True
        self._instance = None
        self._builtin = None
        self._ctx.close()


def validate_inputs(spec: ComponentSpec, inputs: Inputs) -> Inputs:
    """Check inputs against the declared ports.

    Undeclared names are dropped. Declared order is preserved.

    Raises:
        MissingInputError: A required input has no value
        InvalidInputTypeError: A value does not match its declared type
    """
    provided = {name: value for name, value in inputs}
    validated: Inputs = []
    for port in spec.inputs:
        value = provided.get(port.name)
        if value is None:
            if not port.optional:
                raise MissingInputError(
                    f"Required input '{port.name}' has no value",
                    component_id=spec.id,
                    port_name=port.name,
                    hint=f"Connect an upstream {port.type} output or set a value for '{port.name}'",
                )
            continue
        if not value.matches(port.type):
            raise InvalidInputTypeError(
                f"Input '{port.name}' expects {port.type}, got {value.data_type}",
                component_id=spec.id,
                port_name=port.name,
                hint=f"Provide a {port.type} value",
            )
        validated.append((port.name, value))
    return validated


def _parse_outputs(spec: ComponentSpec, raw: Any) -> List[Tuple[str, NodeValue]]:
    try:
        return [(name, NodeValue.model_validate(value)) for name, value in raw]
    except (ValidationError, TypeError, ValueError) as e:
        raise ComponentTrapError(
            f"Component '{spec.id}' produced malformed outputs: {e}", component_id=spec.id
        ) from e


def _check_outputs(spec: ComponentSpec, pairs: Iterable[Tuple[str, NodeValue]]) -> Dict[str, NodeValue]:
    declared = {port.name: port for port in spec.outputs}
    outputs: Dict[str, NodeValue] = {}
    for name, value in pairs:
        port = declared.get(name)
        if port is None:
            logger.warning("Component %s produced undeclared output '%s'", spec.id, name)
            continue
        if not isinstance(value, NodeValue) or not value.matches(port.type):
            raise ComponentTrapError(
                f"Output '{name}' of '{spec.id}' does not match declared type {port.type}",
                component_id=spec.id,
                port_name=name,
            )
        outputs[name] = value
    return outputs


def _raise_violation(contexts: List[HostContext], cause: Optional[BaseException] = None) -> None:
    for ctx in contexts:
        if ctx.violation is not None:
            raise CapabilityViolationError(ctx.violation, component_id=ctx.component_id) from cause


def _invoke_guest(instance: GuestInstance, spec: ComponentSpec, inputs: Inputs) -> Dict[str, NodeValue]:
    contexts = instance.contexts
    for member in contexts:
        member.violation = None
    try:
        result = instance.execute([[name, value.model_dump()] for name, value in inputs])
    except CapabilityViolationError:
        raise
    except ComponentError as e:
        _raise_violation(contexts, e)
        raise
    except Exception as e:
        _raise_violation(contexts, e)
        raise ComponentTrapError(f"Component '{spec.id}' failed: {e}", component_id=spec.id) from e
    _raise_violation(contexts)

    if "err" in result:
        err = result["err"] if isinstance(result["err"], dict) else {"message": str(result["err"])}
        raise ComponentReportedError(
            err.get("message") or "Component reported an error",
            component_id=spec.id,
            port_name=err.get("input_name"),
            hint=err.get("recovery_hint"),
        )
    return _check_outputs(spec, _parse_outputs(spec, result["ok"]))


async def _run_builtin(component: Any, spec: ComponentSpec, inputs: Inputs, ctx: HostContext) -> Dict[str, NodeValue]:
    ctx.violation = None
    try:
        outputs = await component.execute(dict(inputs), ctx)
    except ComponentError:
        raise
    except Exception as e:
        raise ComponentTrapError(
            f"Builtin component '{spec.id}' failed: {e}", component_id=spec.id
        ) from e
    return _check_outputs(spec, outputs.items())
