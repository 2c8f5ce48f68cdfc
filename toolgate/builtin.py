"""Built-in tools registered by the server at startup."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .config import ServerConfig
from .models import ExecutionContext, RateLimitPolicy, ToolDefinition
from .registry import ToolRegistry


class EchoArgs(BaseModel):
    text: str = Field(..., description="Text to return unchanged")


class AddArgs(BaseModel):
    numbers: List[float] = Field(..., min_length=1, description="Numbers to sum")


class ServerInfoArgs(BaseModel):
    pass


async def echo(args: EchoArgs, context: ExecutionContext) -> str:
    return args.text


def add(args: AddArgs, context: ExecutionContext) -> Dict[str, Any]:
    return {"sum": sum(args.numbers), "count": len(args.numbers)}


def server_info_tool(registry: ToolRegistry, config: ServerConfig) -> ToolDefinition:
    async def server_info(args: ServerInfoArgs, context: ExecutionContext) -> Dict[str, Any]:
        return {
            "server_name": config.server_name,
            "server_version": config.server_version,
            "tool_count": len(registry),
            "request_id": context.request_id,
        }

    return ToolDefinition(
        name="server_info",
        description="Report the server's name, version and number of registered tools.",
        schema=ServerInfoArgs,
        handler=server_info,
        permissions=frozenset({"server:read"}),
    )


def builtin_tools(registry: ToolRegistry, config: ServerConfig) -> List[ToolDefinition]:
    return [
        ToolDefinition(
            name="echo",
            description="Return the provided text unchanged.",
            schema=EchoArgs,
            handler=echo,
            rate_limit=RateLimitPolicy(max=60, window_ms=60000),
            timeout_ms=5000,
        ),
        ToolDefinition(
            name="add",
            description="Sum a list of numbers.",
            schema=AddArgs,
            handler=add,
            timeout_ms=5000,
        ),
        server_info_tool(registry, config),
    ]


def register_builtin_tools(registry: ToolRegistry, config: ServerConfig) -> ToolRegistry:
    for tool in builtin_tools(registry, config):
        registry.register(tool)
    return registry
