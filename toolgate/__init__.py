"""Toolgate - validated, permission-checked, rate-limited tool dispatch for MCP servers."""

from .config import ServerConfig
from .errors import (
    MCPError,
    PermissionError,
    RateLimitExceeded,
    TimeoutError,
    ToolNotFound,
    ValidationError,
)
from .middleware import (
    SlidingWindowLimiter,
    logging_middleware,
    rate_limit_middleware,
    retry_middleware,
)
from .models import (
    CancellationToken,
    ExecutionContext,
    RateLimitPolicy,
    ToolDefinition,
    ToolResponse,
    ToolSummary,
)
from .registry import ToolRegistry

__version__ = "1.0.0"

__all__ = [
    "ServerConfig",
    "MCPError",
    "ToolNotFound",
    "ValidationError",
    "PermissionError",
    "TimeoutError",
    "RateLimitExceeded",
    "SlidingWindowLimiter",
    "logging_middleware",
    "rate_limit_middleware",
    "retry_middleware",
    "CancellationToken",
    "ExecutionContext",
    "RateLimitPolicy",
    "ToolDefinition",
    "ToolResponse",
    "ToolSummary",
    "ToolRegistry",
]
