"""Resolved server configuration.

The dispatch core only consumes a :class:`ServerConfig`; reading it from the
process environment is done once at startup by :meth:`ServerConfig.from_env`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .models import DEFAULT_TIMEOUT_MS

ENV_PREFIX = "TOOLGATE_"

LOG_FORMATS = ("text", "json")
METRICS_BACKENDS = ("memory", "prometheus")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class ServerConfig:
    """Configuration consumed by the registry, middleware and server shell."""

    server_name: str = "toolgate"
    server_version: str = "1.0.0"
    allow_deprecated: bool = False
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[Path] = None
    max_retries: int = 3
    max_backoff_s: float = 30.0
    rate_limit_max_keys: int = 10000
    metrics_backend: str = "memory"
    granted_permissions: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        issues = self.validate()
        if issues:
            raise ValueError("Invalid configuration: " + "; ".join(issues))

    def validate(self) -> list[str]:
        issues = []
        if not self.server_name:
            issues.append("server_name is required")
        if self.default_timeout_ms <= 0:
            issues.append("default_timeout_ms must be positive")
        if self.log_format not in LOG_FORMATS:
            issues.append(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        if self.max_retries < 0:
            issues.append("max_retries must not be negative")
        if self.max_backoff_s < 0:
            issues.append("max_backoff_s must not be negative")
        if self.rate_limit_max_keys < 1:
            issues.append("rate_limit_max_keys must be at least 1")
        if self.metrics_backend not in METRICS_BACKENDS:
            issues.append(f"metrics_backend must be one of {', '.join(METRICS_BACKENDS)}")
        return issues

    def with_overrides(self, **changes: Any) -> "ServerConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "server_name": self.server_name,
            "server_version": self.server_version,
            "allow_deprecated": self.allow_deprecated,
            "default_timeout_ms": self.default_timeout_ms,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "log_file": str(self.log_file) if self.log_file else None,
            "max_retries": self.max_retries,
            "max_backoff_s": self.max_backoff_s,
            "rate_limit_max_keys": self.rate_limit_max_keys,
            "metrics_backend": self.metrics_backend,
            "granted_permissions": sorted(self.granted_permissions),
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Build a configuration from ``TOOLGATE_*`` environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()
        kwargs: Dict[str, Any] = {}

        def raw(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value is not None else None

        if raw("SERVER_NAME"):
            kwargs["server_name"] = raw("SERVER_NAME")
        if raw("SERVER_VERSION"):
            kwargs["server_version"] = raw("SERVER_VERSION")
        if raw("ALLOW_DEPRECATED") is not None:
            kwargs["allow_deprecated"] = _parse_bool("ALLOW_DEPRECATED", raw("ALLOW_DEPRECATED"))
        if raw("DEFAULT_TIMEOUT_MS"):
            kwargs["default_timeout_ms"] = _parse_int("DEFAULT_TIMEOUT_MS", raw("DEFAULT_TIMEOUT_MS"))
        if raw("LOG_LEVEL"):
            kwargs["log_level"] = raw("LOG_LEVEL").upper()
        if raw("LOG_FORMAT"):
            kwargs["log_format"] = raw("LOG_FORMAT").lower()
        if raw("LOG_FILE"):
            kwargs["log_file"] = Path(raw("LOG_FILE")).expanduser()
        if raw("MAX_RETRIES"):
            kwargs["max_retries"] = _parse_int("MAX_RETRIES", raw("MAX_RETRIES"))
        if raw("MAX_BACKOFF_S"):
            try:
                kwargs["max_backoff_s"] = float(raw("MAX_BACKOFF_S"))
            except ValueError:
                raise ValueError(
                    f"Environment variable {ENV_PREFIX}MAX_BACKOFF_S must be a number, got '{raw('MAX_BACKOFF_S')}'."
                ) from None
        if raw("RATE_LIMIT_MAX_KEYS"):
            kwargs["rate_limit_max_keys"] = _parse_int("RATE_LIMIT_MAX_KEYS", raw("RATE_LIMIT_MAX_KEYS"))
        if raw("METRICS_BACKEND"):
            kwargs["metrics_backend"] = raw("METRICS_BACKEND").lower()
        if raw("PERMISSIONS") is not None:
            kwargs["granted_permissions"] = frozenset(
                item.strip() for item in raw("PERMISSIONS").split(",") if item.strip()
            )

        return replace(defaults, **kwargs)


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Environment variable {ENV_PREFIX}{name} must be a boolean, got '{value}'.")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {ENV_PREFIX}{name} must be an integer, got '{value}'.") from None
