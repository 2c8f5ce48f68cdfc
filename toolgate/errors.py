"""Error taxonomy for the Toolgate dispatch pipeline.

Every failure raised by the registry, the execution envelope or a middleware
is an instance of :class:`MCPError`. Consumers should switch on ``code``,
never on the display message.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


class MCPError(Exception):
    """Base error carrying a stable code, structured details and a retry hint."""

    code = "INTERNAL_ERROR"
    default_retryable = True

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = dict(details or {})
        self.retryable = self.default_retryable if retryable is None else retryable
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the transport representation shared by all kinds."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "retryable": self.retryable,
        }

    @classmethod
    def from_exception(cls, error: BaseException) -> "MCPError":
        """Return ``error`` itself if it is already an MCPError, else wrap it."""
        if isinstance(error, MCPError):
            return error
        return cls(
            str(error) or type(error).__name__,
            details={"error_type": type(error).__name__},
            retryable=False,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r}, retryable={self.retryable})"


class ToolNotFound(MCPError):
    code = "TOOL_NOT_FOUND"
    default_retryable = False

    def __init__(self, tool_name: str, version: Optional[str] = None) -> None:
        label = f"{tool_name}@{version}" if version else tool_name
        details: Dict[str, Any] = {"tool": tool_name}
        if version:
            details["version"] = version
        super().__init__(f"Tool '{label}' is not registered", details=details)


class ValidationError(MCPError):
    """Arguments failed the tool's input schema."""

    code = "VALIDATION_ERROR"
    default_retryable = False

    def __init__(self, tool_name: str, errors: List[Dict[str, Any]]) -> None:
        self.errors = errors
        summary = "; ".join(_describe_validation_error(err) for err in errors[:3])
        if len(errors) > 3:
            summary += f" (+{len(errors) - 3} more)"
        super().__init__(
            f"Invalid arguments for tool '{tool_name}': {summary}",
            details={"tool": tool_name, "errors": errors},
        )


class PermissionError(MCPError):  # noqa: A001
    """The caller lacks one or more permissions the tool requires."""

    code = "PERMISSION_DENIED"
    default_retryable = False

    def __init__(self, tool_name: str, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            f"Tool '{tool_name}' requires permission: {', '.join(self.missing)}",
            details={"tool": tool_name, "missing_permissions": self.missing},
        )


class TimeoutError(MCPError):  # noqa: A001
    code = "TIMEOUT"
    default_retryable = True

    def __init__(self, tool_name: str, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout_ms}ms",
            details={"tool": tool_name, "timeout_ms": timeout_ms},
        )


class RateLimitExceeded(MCPError):
    """Raised when a partition key has used up its quota for the current window."""

    code = "RATE_LIMIT_EXCEEDED"
    default_retryable = True

    def __init__(self, tool_name: str, key: str, limit: int, window_ms: int, retry_after_ms: int) -> None:
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Rate limit exceeded for tool '{tool_name}': {limit} calls per {window_ms}ms",
            details={
                "tool": tool_name,
                "key": key,
                "limit": limit,
                "window_ms": window_ms,
                "retry_after_ms": retry_after_ms,
            },
        )


def _describe_validation_error(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    return f"{location}: {error.get('msg', 'invalid value')}"


__all__ = [
    "MCPError",
    "ToolNotFound",
    "ValidationError",
    "PermissionError",
    "TimeoutError",
    "RateLimitExceeded",
]
