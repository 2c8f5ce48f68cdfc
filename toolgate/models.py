"""Data models for the Toolgate dispatch pipeline.

This module contains the core data structures shared by the registry, the
execution envelope and the middleware chain: tool definitions, rate-limit
policies, per-call execution contexts and the normalized response envelope.
"""

from __future__ import annotations

import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Type, Union

from pydantic import BaseModel

DEFAULT_VERSION = "1.0.0"
DEFAULT_TIMEOUT_MS = 30000
ANONYMOUS_USER = "anonymous"

_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

ToolFunction = Callable[[Any, "ExecutionContext"], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """At most ``max`` accepted calls per ``window_ms`` for one partition key."""

    max: int
    window_ms: int

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary representation."""
        return {"max": self.max, "window_ms": self.window_ms}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RateLimitPolicy":
        """Create from dictionary representation (accepts ``windowMs`` too)."""
        window = data["window_ms"] if "window_ms" in data else data["windowMs"]
        return cls(max=int(data["max"]), window_ms=int(window))

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0

    def validate(self) -> List[str]:
        """Validate the policy and return any issues."""
        issues = []
        if self.max < 1:
            issues.append("Rate limit max must be at least 1")
        if self.window_ms < 1:
            issues.append("Rate limit window must be at least 1ms")
        return issues


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Immutable descriptor of a named, versioned tool.

    ``schema`` is a pydantic model class; the handler receives the validated
    model instance and the call's :class:`ExecutionContext`. Handlers may be
    plain functions (run on the default executor) or coroutine functions.
    A ``timeout_ms`` of ``None`` defers to the registry's configured default.
    """

    name: str
    description: str
    schema: Type[BaseModel]
    handler: ToolFunction
    version: str = DEFAULT_VERSION
    permissions: FrozenSet[str] = frozenset()
    rate_limit: Optional[RateLimitPolicy] = None
    timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS
    deprecated: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.permissions, frozenset):
            object.__setattr__(self, "permissions", frozenset(self.permissions))
        if isinstance(self.rate_limit, Mapping):
            object.__setattr__(self, "rate_limit", RateLimitPolicy.from_dict(self.rate_limit))

    @property
    def key(self) -> str:
        """History key in ``name@version`` form."""
        return f"{self.name}@{self.version}"

    def input_schema(self) -> Dict[str, Any]:
        """JSON Schema of the tool's arguments."""
        return self.schema.model_json_schema()

    def summary(self) -> "ToolSummary":
        return ToolSummary(
            name=self.name,
            version=self.version,
            description=self.description,
            deprecated=self.deprecated,
            schema=self.input_schema(),
        )

    def validate(self) -> List[str]:
        """Validate the definition and return any issues."""
        issues = []

        if not self.name:
            issues.append("Tool name is required")
        if not _SEMVER_RE.match(self.version or ""):
            issues.append(f"Version '{self.version}' is not a semantic version")
        if not self.description:
            issues.append("Description is required")
        if not (isinstance(self.schema, type) and issubclass(self.schema, BaseModel)):
            issues.append("Schema must be a pydantic model class")
        if not callable(self.handler):
            issues.append("Handler must be callable")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            issues.append("Timeout must be positive")
        if self.rate_limit is not None:
            issues.extend(self.rate_limit.validate())

        return issues


@dataclass(frozen=True, slots=True)
class ToolSummary:
    """Descriptive metadata for a tool listing. Never carries the handler."""

    name: str
    version: str
    description: str
    deprecated: bool
    schema: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "deprecated": self.deprecated,
            "schema": self.schema,
        }


class CancellationToken:
    """Cooperative cancellation flag handed to handlers through the context.

    Async handlers are cancelled through their task; synchronous handlers
    running on a worker thread should poll :meth:`is_set` at convenient points.
    """

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_set()})"


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Per-call context owned by a single invocation."""

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: Optional[str] = None
    permissions: FrozenSet[str] = frozenset()
    max_retries: Optional[int] = None
    cancellation: CancellationToken = field(default_factory=CancellationToken, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.permissions, frozenset):
            object.__setattr__(self, "permissions", frozenset(self.permissions))

    @property
    def partition_key(self) -> str:
        """Identity used to separate rate-limit accounting between callers."""
        return self.user_id or ANONYMOUS_USER

    def missing_permissions(self, required: Iterable[str]) -> FrozenSet[str]:
        return frozenset(required) - self.permissions

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "request_id": self.request_id,
            "user_id": self.user_id,
            "permissions": sorted(self.permissions),
            "max_retries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        """Create from dictionary representation; missing fields take defaults."""
        data = data or {}
        kwargs: Dict[str, Any] = {
            "user_id": data.get("user_id") or data.get("userId"),
            "permissions": frozenset(data.get("permissions") or ()),
        }
        request_id = data.get("request_id") or data.get("requestId")
        if request_id:
            kwargs["request_id"] = str(request_id)
        max_retries = data.get("max_retries", data.get("maxRetries"))
        if max_retries is not None:
            kwargs["max_retries"] = int(max_retries)
        return cls(**kwargs)


@dataclass(slots=True)
class ToolResponse:
    """Normalized response envelope returned by ``ToolRegistry.execute``."""

    content: List[Dict[str, Any]]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated text of all text content blocks."""
        return "".join(block.get("text", "") for block in self.content if block.get("type") == "text")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "content": [dict(block) for block in self.content],
            "metadata": dict(self.metadata),
        }
