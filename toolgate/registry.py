"""Tool registry and the single dispatch entry point.

The registry owns the active ``name -> ToolDefinition`` mapping, the
append-only ``name@version`` history and the ordered middleware chain. It
composes one handler per tool (middleware folded around the execution
envelope) when the tool is registered or the chain changes, and it is the
only component that reports metrics.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .config import ServerConfig
from .envelope import Handler, build_envelope
from .errors import ToolNotFound
from .metrics import CALLS_METRIC, DURATION_METRIC, UNKNOWN_TOOL_LABEL, InMemoryMetrics, MetricsSink
from .middleware import Middleware
from .models import ExecutionContext, ToolDefinition, ToolResponse, ToolSummary


class ToolSummaries:
    """Lazy, restartable view over the registry's active tools.

    Each iteration walks the definitions active at that moment.
    """

    def __init__(self, registry: "ToolRegistry", include_deprecated: bool) -> None:
        self._registry = registry
        self._include_deprecated = include_deprecated

    def __iter__(self) -> Iterator[ToolSummary]:
        for tool in list(self._registry._by_name.values()):
            if tool.deprecated and not self._include_deprecated:
                continue
            yield tool.summary()

    def to_list(self) -> List[Dict[str, Any]]:
        return [summary.to_dict() for summary in self]


class ToolRegistry:
    """In-memory, process-scoped registry of tools."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        metrics: Optional[MetricsSink] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.metrics: MetricsSink = metrics if metrics is not None else InMemoryMetrics()
        self.logger = logger or logging.getLogger("toolgate.registry")
        self._by_name: Dict[str, ToolDefinition] = {}
        self._by_name_version: Dict[str, ToolDefinition] = {}
        self._middleware: List[Middleware] = []
        self._composed: Dict[str, Handler] = {}

    # --- Registration ---
    def register(self, tool: ToolDefinition) -> "ToolRegistry":
        if not isinstance(tool.name, str) or not tool.name:
            raise ValueError("Tool name must be a non-empty string")

        for issue in tool.validate():
            self.logger.warning(f"Tool {tool.key}: {issue}")

        previous = self._by_name.get(tool.name)
        if previous is not None:
            self.logger.warning(
                f"Overriding tool {tool.name}: replacing version {previous.version} with {tool.version}",
                extra={"extra_fields": {
                    "tool": tool.name,
                    "previous_version": previous.version,
                    "version": tool.version,
                }},
            )

        self._by_name_version[tool.key] = tool
        self._composed[tool.key] = self._compose(tool)
        self._by_name[tool.name] = tool
        self.logger.debug(f"Registered tool {tool.key}")
        return self

    def use(self, middleware: Middleware) -> "ToolRegistry":
        """Append a middleware; earlier middleware wraps later middleware."""
        self._middleware.append(middleware)
        self._composed = {tool.key: self._compose(tool) for tool in self._by_name.values()}
        return self

    @property
    def middleware(self) -> List[Middleware]:
        return list(self._middleware)

    # --- Lookup ---
    def get_tool(self, name: str, version: Optional[str] = None) -> ToolDefinition:
        if version is None:
            tool = self._by_name.get(name)
        else:
            tool = self._by_name_version.get(f"{name}@{version}")
        if tool is None:
            raise ToolNotFound(name, version)
        return tool

    def versions(self, name: str) -> List[str]:
        """Every version ever registered under ``name``, in registration order."""
        return [tool.version for tool in self._by_name_version.values() if tool.name == name]

    def get_tools(self, include_deprecated: Optional[bool] = None) -> ToolSummaries:
        if include_deprecated is None:
            include_deprecated = self.config.allow_deprecated
        return ToolSummaries(self, include_deprecated)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    # --- Dispatch ---
    async def execute(
        self,
        tool_name: str,
        args: Optional[Mapping[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
        *,
        version: Optional[str] = None,
    ) -> ToolResponse:
        """Dispatch a call through the tool's composed handler."""
        context = context or ExecutionContext()
        started = time.perf_counter()
        status = "error"
        # Names that resolve to no tool share one label.
        label = UNKNOWN_TOOL_LABEL
        try:
            tool = self.get_tool(tool_name, version)
            label = tool.name
            handler = self._handler_for(tool)
            if tool.deprecated:
                self.logger.warning(
                    f"Tool {tool.key} is deprecated",
                    extra={"extra_fields": {"tool": tool.name, "version": tool.version, "request_id": context.request_id}},
                )
            response = await handler(args if args is not None else {}, context)
            status = "success"
            return response
        finally:
            self.metrics.increment(CALLS_METRIC, {"tool": label, "status": status})
            self.metrics.observe(DURATION_METRIC, time.perf_counter() - started, {"tool": label})

    def _handler_for(self, tool: ToolDefinition) -> Handler:
        handler = self._composed.get(tool.key)
        if handler is None or self._by_name_version.get(tool.key) is not tool:
            handler = self._compose(tool)
            self._composed[tool.key] = handler
        return handler

    def _compose(self, tool: ToolDefinition) -> Handler:
        handler = build_envelope(tool, self.config.default_timeout_ms)
        for middleware in reversed(self._middleware):
            handler = middleware(handler, tool)
        return handler
