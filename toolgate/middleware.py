"""Middleware transforms wrapped around a tool's raw handler.

A middleware is a callable ``(inner_handler, tool) -> outer_handler``.
Building the outer handler has no side effects; all effects happen when it
is awaited. The registry folds the chain so the first middleware registered
is the outermost wrapper.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable, Deque, List, Mapping, Optional, Tuple

from .envelope import Handler
from .errors import MCPError, RateLimitExceeded
from .models import ExecutionContext, RateLimitPolicy, ToolDefinition, ToolResponse

Middleware = Callable[[Handler, ToolDefinition], Handler]

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_MAX_KEYS = 10000


def logging_middleware(logger: Optional[logging.Logger] = None) -> Middleware:
    """Log entry, completion and failure of every call passing through."""

    log = logger or logging.getLogger("toolgate.calls")

    def middleware(inner: Handler, tool: ToolDefinition) -> Handler:
        async def handler(args: Mapping[str, Any], context: ExecutionContext) -> ToolResponse:
            fields = {"tool": tool.name, "version": tool.version, "request_id": context.request_id}
            log.info(
                f"Executing tool: {tool.name}",
                extra={"extra_fields": {**fields, "arguments": dict(args) if isinstance(args, Mapping) else args, "status": "started"}},
            )
            started = time.perf_counter()
            try:
                result = await inner(args, context)
            except Exception as e:
                log.error(
                    f"Tool {tool.name} failed: {e}",
                    extra={"extra_fields": {
                        **fields,
                        "status": "error",
                        "error_code": getattr(e, "code", type(e).__name__),
                        "error_message": str(e),
                        "duration": time.perf_counter() - started,
                    }},
                )
                raise
            log.info(
                f"Tool {tool.name} completed",
                extra={"extra_fields": {**fields, "status": "success", "duration": time.perf_counter() - started}},
            )
            return result

        return handler

    return middleware


class _Window:
    __slots__ = ("timestamps", "lock", "last_seen", "window", "scheduled")

    def __init__(self, window: float) -> None:
        self.timestamps: Deque[float] = deque()
        self.lock = threading.Lock()
        self.last_seen = 0.0
        self.window = window
        self.scheduled: Optional[float] = None


class SlidingWindowLimiter:
    """Sliding-window call accounting per (tool, partition key).

    The check and the record for one key happen under that key's lock, so
    the quota holds even when callers run on several threads. The window map
    is bounded: entries idle for longer than their window are dropped, and
    past ``max_keys`` the least recently used entry is evicted.
    """

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS, clock: Callable[[], float] = time.monotonic) -> None:
        if max_keys < 1:
            raise ValueError("max_keys must be at least 1")
        self.max_keys = max_keys
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: "OrderedDict[Tuple[str, str], _Window]" = OrderedDict()
        self._deadlines: List[Tuple[float, Tuple[str, str]]] = []

    def acquire(self, tool_name: str, key: str, policy: RateLimitPolicy) -> Optional[float]:
        """Record a call if the quota allows it.

        Returns ``None`` when the call was accepted, otherwise the number of
        seconds until the oldest recorded call leaves the window.
        """
        now = self._clock()
        window = self._window_for((tool_name, key), policy.window_seconds, now)
        with window.lock:
            cutoff = now - window.window
            while window.timestamps and window.timestamps[0] < cutoff:
                window.timestamps.popleft()
            if len(window.timestamps) >= policy.max:
                return max(0.0, window.timestamps[0] + window.window - now)
            window.timestamps.append(now)
            return None

    def usage(self, tool_name: str, key: str) -> int:
        """Calls currently recorded for the pair (without pruning)."""
        with self._lock:
            window = self._windows.get((tool_name, key))
        if window is None:
            return 0
        with window.lock:
            return len(window.timestamps)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._deadlines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _window_for(self, pair: Tuple[str, str], window_seconds: float, now: float) -> _Window:
        with self._lock:
            self._expire_idle(now)
            window = self._windows.get(pair)
            if window is None:
                window = _Window(window_seconds)
                self._windows[pair] = window
                while len(self._windows) > self.max_keys:
                    self._windows.popitem(last=False)
            else:
                window.window = window_seconds
                self._windows.move_to_end(pair)
            window.last_seen = now
            if window.scheduled is None:
                self._schedule(pair, window, now + window.window)
            return window

    def _schedule(self, pair: Tuple[str, str], window: _Window, deadline: float) -> None:
        window.scheduled = deadline
        heapq.heappush(self._deadlines, (deadline, pair))

    def _expire_idle(self, now: float) -> None:
        # Heap of (last_seen + window, pair); stale entries are skipped.
        while self._deadlines and self._deadlines[0][0] < now:
            deadline, pair = heapq.heappop(self._deadlines)
            window = self._windows.get(pair)
            if window is None or window.scheduled != deadline:
                continue
            current = window.last_seen + window.window
            if current < now:
                del self._windows[pair]
            else:
                self._schedule(pair, window, current)


def rate_limit_middleware(limiter: Optional[SlidingWindowLimiter] = None) -> Middleware:
    """Reject calls past the tool's ``rate_limit`` for the caller's partition key."""

    shared = limiter if limiter is not None else SlidingWindowLimiter()

    def middleware(inner: Handler, tool: ToolDefinition) -> Handler:
        policy = tool.rate_limit
        if policy is None:
            return inner

        async def handler(args: Mapping[str, Any], context: ExecutionContext) -> ToolResponse:
            key = context.partition_key
            retry_after = shared.acquire(tool.name, key, policy)
            if retry_after is not None:
                raise RateLimitExceeded(
                    tool.name,
                    key,
                    policy.max,
                    policy.window_ms,
                    retry_after_ms=int(retry_after * 1000) + 1,
                )
            return await inner(args, context)

        return handler

    middleware.limiter = shared
    return middleware


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY, max_delay: Optional[float] = DEFAULT_MAX_DELAY) -> float:
    """Delay before retry number ``attempt`` (0-based): ``base * 2**attempt``, capped."""
    delay = base_delay * (2 ** attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def retry_middleware(
    default_max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: Optional[float] = DEFAULT_MAX_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    logger: Optional[logging.Logger] = None,
) -> Middleware:
    """Re-invoke the inner handler on retryable failures with exponential backoff.

    ``context.max_retries`` overrides ``default_max_retries``. Errors whose
    ``retryable`` attribute is ``False`` are re-raised at once; any other
    exception is retried. Once attempts run out the last error is re-raised
    unchanged.
    """

    log = logger or logging.getLogger("toolgate.retry")

    def middleware(inner: Handler, tool: ToolDefinition) -> Handler:
        async def handler(args: Mapping[str, Any], context: ExecutionContext) -> ToolResponse:
            retries = default_max_retries if context.max_retries is None else max(0, context.max_retries)
            attempt = 0
            while True:
                try:
                    return await inner(args, context)
                except Exception as e:
                    if getattr(e, "retryable", None) is False or attempt >= retries:
                        raise
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    log.warning(
                        f"Retrying tool {tool.name} in {delay:.2f}s (attempt {attempt + 1} of {retries}): {e}",
                        extra={"extra_fields": {
                            "tool": tool.name,
                            "request_id": context.request_id,
                            "attempt": attempt + 1,
                            "max_retries": retries,
                            "delay": delay,
                            "error_code": e.code if isinstance(e, MCPError) else type(e).__name__,
                        }},
                    )
                    attempt += 1
                    await sleep(delay)

        return handler

    return middleware
