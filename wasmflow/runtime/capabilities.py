"""Capability parsing and validation.

Capabilities are strings of the form ``category:scope``:

- ``network:example.com`` authorizes requests to example.com and any of its
  subdomains, never the reverse
- ``file-read:/data`` and ``file-write:/data`` authorize the path itself and
  anything below it, in that mode only
- ``log:*`` and ``scratch:*`` gate the host-provided logging and scratch
  directory

A ``*`` scope matches every target of its category.

The validator is stateless. Host functions call ``check`` at the point of
effect, every time, with the component's declared capabilities and the
capabilities the user granted; an effect proceeds only when a capability
that is both declared and granted covers it.

Example:
    >>> declared = parse_capabilities(["network:example.com"])
    >>> check(declared, declared, Operation.network("https://api.example.com/v1"))
    Allow()
    >>> check(declared, declared, Operation.network("https://example.org"))
    Deny(...)
"""

import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Union

import httpx
from pydantic import BaseModel, Field

from wasmflow.utils.errors import InvalidCapabilityError

WILDCARD = "*"


class CapabilityCategory(str, Enum):
    NETWORK = "network"
    FILE_READ = "file-read"
    FILE_WRITE = "file-write"
    LOG = "log"
    SCRATCH = "scratch"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_CATEGORY_RISK = {
    CapabilityCategory.LOG: RiskLevel.LOW,
    CapabilityCategory.SCRATCH: RiskLevel.LOW,
    CapabilityCategory.FILE_READ: RiskLevel.MEDIUM,
    CapabilityCategory.NETWORK: RiskLevel.MEDIUM,
    CapabilityCategory.FILE_WRITE: RiskLevel.HIGH,
}

_CATEGORY_DESCRIPTION = {
    CapabilityCategory.NETWORK: "Make outbound network requests to {scope}",
    CapabilityCategory.FILE_READ: "Read files under {scope}",
    CapabilityCategory.FILE_WRITE: "Create and modify files under {scope}",
    CapabilityCategory.LOG: "Write log messages",
    CapabilityCategory.SCRATCH: "Use a private scratch directory",
}


def _normalize_host(value: str) -> str:
    text = value.strip()
    if "://" not in text:
        text = "http://" + text
    return httpx.URL(text).host.lower().rstrip(".")


def _normalize_path(value: str) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(value)))


@dataclass(frozen=True)
class Capability:
    """A parsed ``category:scope`` capability."""

    category: CapabilityCategory
    scope: str

    @classmethod
    def parse(cls, text: str) -> "Capability":
        """Parse a capability string.

        Raises:
            InvalidCapabilityError: If the string is malformed or the category unknown
        """
        category_text, sep, scope = text.strip().partition(":")
        if not sep or not scope:
            raise InvalidCapabilityError(
                f"Invalid capability '{text}'",
                hint="Capabilities are written as category:scope, e.g. network:api.example.com",
            )
        try:
            category = CapabilityCategory(category_text.lower())
        except ValueError:
            known = ", ".join(c.value for c in CapabilityCategory)
            raise InvalidCapabilityError(
                f"Unknown capability category '{category_text}'",
                hint=f"Known categories: {known}",
            ) from None

        if scope != WILDCARD:
            if category == CapabilityCategory.NETWORK:
                try:
                    scope = _normalize_host(scope)
                except httpx.InvalidURL:
                    raise InvalidCapabilityError(f"Invalid network scope '{scope}'") from None
            elif category in (CapabilityCategory.FILE_READ, CapabilityCategory.FILE_WRITE):
                scope = _normalize_path(scope)
        return cls(category, scope)

    def __str__(self) -> str:
        return f"{self.category.value}:{self.scope}"

    @property
    def risk_level(self) -> RiskLevel:
        if self.scope == WILDCARD and self.category in (
            CapabilityCategory.NETWORK,
            CapabilityCategory.FILE_READ,
            CapabilityCategory.FILE_WRITE,
        ):
            return RiskLevel.HIGH
        return _CATEGORY_RISK[self.category]

    @property
    def description(self) -> str:
        scope = "any target" if self.scope == WILDCARD else self.scope
        return _CATEGORY_DESCRIPTION[self.category].format(scope=scope)

    def covers(self, operation: "Operation") -> bool:
        """Whether this capability authorizes the operation."""
        if self.category != operation.category:
            return False
        if self.scope == WILDCARD:
            return True
        if self.category == CapabilityCategory.NETWORK:
            return operation.target == self.scope or operation.target.endswith("." + self.scope)
        if self.category in (CapabilityCategory.FILE_READ, CapabilityCategory.FILE_WRITE):
            if operation.target == self.scope:
                return True
            prefix = self.scope if self.scope.endswith(os.sep) else self.scope + os.sep
            return operation.target.startswith(prefix)
        return operation.target == self.scope


def parse_capabilities(values: Iterable[Union[str, Capability]]) -> FrozenSet[Capability]:
    """Parse capability strings into a set; Capability objects pass through."""
    return frozenset(v if isinstance(v, Capability) else Capability.parse(v) for v in values)


@dataclass(frozen=True)
class Operation:
    """An effect a component is attempting.

    Attributes:
        category: Capability category the effect needs
        target: Normalized host, path or scope of the effect
        detail: Original request description, for messages
    """

    category: CapabilityCategory
    target: str
    detail: str = ""

    @classmethod
    def network(cls, url: str) -> "Operation":
        return cls(CapabilityCategory.NETWORK, _normalize_host(url), url)

    @classmethod
    def file_read(cls, path: str) -> "Operation":
        return cls(CapabilityCategory.FILE_READ, _normalize_path(path), path)

    @classmethod
    def file_write(cls, path: str) -> "Operation":
        return cls(CapabilityCategory.FILE_WRITE, _normalize_path(path), path)

    @classmethod
    def log(cls, level: str = "info") -> "Operation":
        return cls(CapabilityCategory.LOG, level.lower(), level)

    @classmethod
    def scratch(cls) -> "Operation":
        return cls(CapabilityCategory.SCRATCH, "dir", "scratch directory")

    def __str__(self) -> str:
        return f"{self.category.value} {self.detail or self.target}"


class DenyReason(str, Enum):
    NOT_DECLARED = "outside declared scope"
    NOT_GRANTED = "declared but not granted"


@dataclass(frozen=True)
class Allow:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    """A refused effect.

    Attributes:
        operation: The refused effect
        reason: Why it was refused
        required: Capability string that would authorize the effect
    """

    operation: Operation
    reason: DenyReason
    required: str = ""

    def __bool__(self) -> bool:
        return False

    @property
    def hint(self) -> str:
        if self.reason == DenyReason.NOT_GRANTED:
            return f"Grant '{self.required}' to this component to allow the request"
        return f"The component must declare '{self.required}' and be granted it"


Decision = Union[Allow, Deny]


def _suggested_capability(operation: Operation) -> str:
    return f"{operation.category.value}:{operation.target}"


def check(
    required: Iterable[Capability],
    granted: Iterable[Capability],
    operation: Operation,
) -> Decision:
    """Decide whether an effect may proceed.

    Args:
        required: Capabilities the component declared
        granted: Capabilities the user granted the component
        operation: The effect being attempted

    Returns:
        Allow, or Deny with the reason
    """
    declared = [cap for cap in required if cap.covers(operation)]
    if not declared:
        return Deny(operation, DenyReason.NOT_DECLARED, _suggested_capability(operation))
    granted = list(granted)
    if not any(cap.covers(operation) for cap in granted):
        return Deny(operation, DenyReason.NOT_GRANTED, str(declared[0]))
    return Allow()


class CapabilityValidator:
    """Stateless validator object, injectable where a callable is expected."""

    def check(
        self,
        required: Iterable[Capability],
        granted: Iterable[Capability],
        operation: Operation,
    ) -> Decision:
        return check(required, granted, operation)


class CapabilityGrant(BaseModel):
    """Capabilities a user approved for one component.

    Attributes:
        component_id: Registry identity the grant belongs to
        capabilities: Granted capability strings
        granted_at: Approval time
    """

    component_id: str
    capabilities: List[str] = Field(default_factory=list)
    granted_at: datetime = Field(default_factory=datetime.now)

    def parsed(self) -> FrozenSet[Capability]:
        return parse_capabilities(self.capabilities)

    @property
    def risk_level(self) -> Optional[RiskLevel]:
        order = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]
        levels = [cap.risk_level for cap in self.parsed()]
        return max(levels, key=order.index) if levels else None

    @property
    def scope_description(self) -> str:
        if not self.capabilities:
            return "No capabilities granted"
        return "; ".join(sorted(cap.description for cap in self.parsed()))
