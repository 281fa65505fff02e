"""Host functions offered to components during one invocation.

A ``HostContext`` is created per invocation (or per continuous session) and
carries the component's declared and granted capabilities. Every effectful
host function authorizes its operation through the capability validator
right before performing it; a denial is recorded on the context and raised
as ``CapabilityViolationError``, which aborts the invocation.

Ordinary failures of an authorized effect (missing file, unreachable host)
are returned to the component as data so it can report them itself.
"""

import logging
import os
import re
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

import httpx

from wasmflow.runtime.capabilities import (
    Capability,
    CapabilityCategory,
    CapabilityValidator,
    Deny,
    Operation,
    WILDCARD,
)
from wasmflow.utils.errors import CapabilityViolationError

logger = logging.getLogger(__name__)
component_logger = logging.getLogger("wasmflow.component")

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

LOG_ALL = Capability(CapabilityCategory.LOG, WILDCARD)

HttpClientFactory = Callable[[], httpx.Client]


def _safe_dirname(component_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", component_id)


class HostContext:
    """Capability-checked host services for one component invocation.

    Attributes:
        component_id: Component the context belongs to
        violation: First denied operation, if any
        logs: (level, message) pairs the component logged
        requests: Number of outbound requests actually sent
    """

    def __init__(
        self,
        component_id: str,
        declared: FrozenSet[Capability],
        granted: FrozenSet[Capability],
        *,
        scratch_root: str,
        http_client_factory: Optional[HttpClientFactory] = None,
        http_timeout: float = 10.0,
        validator: Optional[CapabilityValidator] = None,
        implicit_log: bool = True,
    ):
        if implicit_log:
            declared = declared | {LOG_ALL}
            granted = granted | {LOG_ALL}
        self.component_id = component_id
        self.declared = declared
        self.granted = granted
        self.scratch_root = scratch_root
        self.validator = validator or CapabilityValidator()
        self.violation: Optional[Deny] = None
        self.logs: List[Tuple[str, str]] = []
        self.requests = 0
        self._http_client_factory = http_client_factory or (
            lambda: httpx.Client(timeout=http_timeout, follow_redirects=False)
        )
        self._http_client: Optional[httpx.Client] = None
        self._implicit_log = implicit_log

    def update_grants(self, granted: FrozenSet[Capability]) -> None:
        """Replace the granted set, e.g. before each continuous iteration."""
        self.granted = granted | {LOG_ALL} if self._implicit_log else granted

    def __enter__(self) -> "HostContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def authorize(self, operation: Operation) -> None:
        """Check an operation against declared and granted capabilities.

        Raises:
            CapabilityViolationError: If the operation is denied
        """
        decision = self.validator.check(self.declared, self.granted, operation)
        if isinstance(decision, Deny):
            if self.violation is None:
                self.violation = decision
            logger.warning(
                "Denied %s for component %s: %s", operation, self.component_id, decision.reason.value
            )
            raise CapabilityViolationError(decision, component_id=self.component_id)

    # ------------------------------------------------------------------
    # Host functions
    # ------------------------------------------------------------------

    def log(self, level: str, message: str) -> None:
        level = level.lower()
        self.authorize(Operation.log(level))
        self.logs.append((level, message))
        component_logger.log(
            LOG_LEVELS.get(level, logging.INFO),
            "[%s] %s",
            self.component_id,
            message,
            extra={"component_id": self.component_id},
        )

    def scratch_dir(self) -> str:
        """Create (if needed) and return this component's scratch directory."""
        self.authorize(Operation.scratch())
        path = os.path.join(self.scratch_root, _safe_dirname(self.component_id))
        os.makedirs(path, exist_ok=True)
        return path

    def read_file(self, path: str) -> Dict[str, Any]:
        self._authorize_file(path, Operation.file_read(path))
        try:
            with open(path, "rb") as f:
                return {"ok": f.read()}
        except OSError as e:
            return {"err": f"{type(e).__name__}: {e.strerror or e}"}

    def write_file(self, path: str, data: bytes) -> Dict[str, Any]:
        self._authorize_file(path, Operation.file_write(path))
        try:
            with open(path, "wb") as f:
                return {"ok": f.write(data)}
        except OSError as e:
            return {"err": f"{type(e).__name__}: {e.strerror or e}"}

    def http_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send an outbound request after checking the network capability.

        Returns:
            ``{"ok": {"status", "headers", "body"}}`` or ``{"err": message}``
        """
        try:
            operation = Operation.network(url)
        except httpx.InvalidURL as e:
            return {"err": f"Invalid URL '{url}': {e}"}
        self.authorize(operation)

        if self._http_client is None:
            self._http_client = self._http_client_factory()
        self.requests += 1
        try:
            response = self._http_client.request(
                method.upper(), url, headers=headers or {}, content=body
            )
        except httpx.HTTPError as e:
            return {"err": f"Request to {url} failed: {e}"}
        return {
            "ok": {
                "status": response.status_code,
                "headers": dict(response.headers),
                "body": response.text,
            }
        }

    def _authorize_file(self, path: str, operation: Operation) -> None:
        # A granted scratch directory covers its own contents.
        if any(cap.covers(Operation.scratch()) for cap in self.granted):
            scratch = os.path.normpath(
                os.path.abspath(os.path.join(self.scratch_root, _safe_dirname(self.component_id)))
            )
            if operation.target == scratch or operation.target.startswith(scratch + os.sep):
                self.authorize(Operation.scratch())
                return
        self.authorize(operation)
