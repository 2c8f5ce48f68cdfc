"""MCP server exposing the Toolgate dispatch pipeline over stdio."""

from __future__ import annotations

import asyncio
import sys

from toolgate.config import ServerConfig
from toolgate.server import build_registry, run_stdio
from toolgate.toolgate_logging import setup_logging_from_config


def main() -> int:
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging_from_config(config)
    registry = build_registry(config)
    asyncio.run(run_stdio(config, registry))
    return 0


if __name__ == "__main__":
    sys.exit(main())
