"""MCP server shell binding the tool registry to the stdio transport."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from .builtin import register_builtin_tools
from .config import ServerConfig
from .errors import MCPError
from .metrics import MetricsSink, create_metrics
from .middleware import SlidingWindowLimiter, logging_middleware, rate_limit_middleware, retry_middleware
from .models import ExecutionContext
from .registry import ToolRegistry
from .toolgate_logging import log_error_with_context

logger = logging.getLogger("toolgate.server")


class ToolCallFailed(Exception):
    """Carries a serialized taxonomy error back through the transport."""

    def __init__(self, error: MCPError) -> None:
        self.error = error
        self.payload = error.to_dict()
        super().__init__(json.dumps(self.payload, default=str))


def build_registry(
    config: ServerConfig,
    metrics: Optional[MetricsSink] = None,
    *,
    include_builtin: bool = True,
) -> ToolRegistry:
    """Create a registry with the default middleware order: logging, rate limiting, retry."""

    registry = ToolRegistry(config=config, metrics=metrics if metrics is not None else create_metrics(config))
    registry.use(logging_middleware())
    registry.use(rate_limit_middleware(SlidingWindowLimiter(max_keys=config.rate_limit_max_keys)))
    registry.use(retry_middleware(default_max_retries=config.max_retries, max_delay=config.max_backoff_s))
    if include_builtin:
        register_builtin_tools(registry, config)
    return registry


def list_tool_specs(registry: ToolRegistry) -> List[types.Tool]:
    specs = []
    for summary in registry.get_tools():
        description = summary.description
        if summary.deprecated:
            description = f"[deprecated] {description}"
        specs.append(types.Tool(name=summary.name, description=description, inputSchema=summary.schema))
    return specs


def context_from_meta(meta: Optional[Mapping[str, Any]], config: ServerConfig) -> ExecutionContext:
    """Build the call context from request metadata and the configured grants."""
    data: Dict[str, Any] = dict(meta or {})
    data["permissions"] = config.granted_permissions
    return ExecutionContext.from_dict(data)


async def dispatch(
    registry: ToolRegistry,
    config: ServerConfig,
    name: str,
    arguments: Optional[Mapping[str, Any]],
    meta: Optional[Mapping[str, Any]] = None,
) -> List[types.TextContent]:
    context = context_from_meta(meta, config)
    try:
        response = await registry.execute(name, arguments or {}, context)
    except MCPError as e:
        raise ToolCallFailed(e) from e
    except Exception as e:
        log_error_with_context(e, {"operation": "call_tool", "tool": name, "request_id": context.request_id})
        raise ToolCallFailed(MCPError.from_exception(e)) from e
    return [types.TextContent(type="text", text=block["text"]) for block in response.content]


def create_server(registry: ToolRegistry, config: ServerConfig) -> Server:
    server = Server(config.server_name, version=config.server_version)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        return list_tool_specs(registry)

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> List[types.TextContent]:
        return await dispatch(registry, config, name, arguments, _request_meta(server))

    return server


def _request_meta(server: Server) -> Dict[str, Any]:
    try:
        meta = server.request_context.meta
    except LookupError:
        return {}
    if meta is None:
        return {}
    return dict(meta.model_extra or {})


async def run_stdio(config: ServerConfig, registry: Optional[ToolRegistry] = None) -> None:
    registry = registry or build_registry(config)
    server = create_server(registry, config)
    logger.info(
        f"Starting {config.server_name} {config.server_version} with {len(registry)} tools",
        extra={"extra_fields": {"config": config.to_dict()}},
    )
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
