"""Integration tests for the complete dispatch pipeline.

A registry is assembled the way the server does it (logging, then rate
limiting, then retry) and driven through ``execute`` end to end.
"""

import asyncio
import logging
import time

import pytest
from pydantic import BaseModel

from toolgate.config import ServerConfig
from toolgate.errors import (
    MCPError,
    PermissionError,
    RateLimitExceeded,
    TimeoutError,
    ToolNotFound,
    ValidationError,
)
from toolgate.metrics import CALLS_METRIC, InMemoryMetrics
from toolgate.middleware import (
    SlidingWindowLimiter,
    logging_middleware,
    rate_limit_middleware,
    retry_middleware,
)
from toolgate.models import ExecutionContext, RateLimitPolicy, ToolDefinition
from toolgate.registry import ToolRegistry

CALL_LOGGER = "toolgate.test.pipeline"
RETRY_LOGGER = "toolgate.retry"


class QueryArgs(BaseModel):
    query: str


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeSleep:
    """Records backoff delays and advances the limiter clock instead of sleeping."""

    def __init__(self, clock):
        self.clock = clock
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        self.clock.now += delay


class Handler:
    def __init__(self, error=None, result="found"):
        self.calls = 0
        self.error = error
        self.result = result

    async def __call__(self, args, context):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {"query": args.query, "result": self.result}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def call_logs(caplog):
    caplog.set_level(logging.INFO, logger=CALL_LOGGER)
    return lambda: [r for r in caplog.records if r.name == CALL_LOGGER]


@pytest.fixture
def retry_logs(caplog):
    caplog.set_level(logging.INFO, logger=RETRY_LOGGER)
    return lambda: [r for r in caplog.records if r.name == RETRY_LOGGER]


@pytest.fixture
def registry(clock, sleep):
    registry = ToolRegistry(config=ServerConfig(), metrics=InMemoryMetrics())
    registry.use(logging_middleware(logging.getLogger(CALL_LOGGER)))
    registry.use(rate_limit_middleware(SlidingWindowLimiter(clock=clock)))
    registry.use(retry_middleware(sleep=sleep))
    return registry


def search_tool(handler, **overrides):
    fields = dict(name="search", description="Search the index", schema=QueryArgs, handler=handler)
    fields.update(overrides)
    return ToolDefinition(**fields)


class TestDispatchPipeline:
    """End-to-end behaviour of execute with the default middleware order."""

    @pytest.mark.asyncio
    async def test_unregistered_tool(self, registry):
        with pytest.raises(ToolNotFound) as excinfo:
            await registry.execute("missing", {"query": "x"})

        assert excinfo.value.retryable is False
        assert excinfo.value.to_dict()["code"] == "TOOL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_successful_call(self, registry):
        registry.register(search_tool(Handler(), version="1.3.0"))

        response = await registry.execute("search", {"query": "cats"}, ExecutionContext(user_id="alice"))

        body = response.to_dict()
        assert body["content"][0]["type"] == "text"
        assert '"query": "cats"' in body["content"][0]["text"]
        assert body["metadata"]["version"] == "1.3.0"

    @pytest.mark.asyncio
    async def test_validation_failure_never_invokes_handler(self, registry, sleep):
        handler = Handler()
        registry.register(search_tool(handler))

        with pytest.raises(ValidationError):
            await registry.execute("search", {"query": ["not", "a", "string"]})

        assert handler.calls == 0
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_permission_failure_is_not_retried(self, registry, sleep):
        handler = Handler()
        registry.register(search_tool(handler, permissions={"index:read"}))

        with pytest.raises(PermissionError) as excinfo:
            await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=3))

        assert excinfo.value.details["missing_permissions"] == ["index:read"]
        assert handler.calls == 0
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_rate_limit_window(self, registry, clock):
        handler = Handler()
        registry.register(search_tool(handler, rate_limit=RateLimitPolicy(max=2, window_ms=1000)))
        context = ExecutionContext(user_id="alice")

        await registry.execute("search", {"query": "1"}, context)
        await registry.execute("search", {"query": "2"}, context)
        with pytest.raises(RateLimitExceeded):
            await registry.execute("search", {"query": "3"}, context)

        clock.now += 1.001
        await registry.execute("search", {"query": "4"}, context)

        assert handler.calls == 3
        assert registry.metrics.count(CALLS_METRIC, tool="search", status="success") == 3
        assert registry.metrics.count(CALLS_METRIC, tool="search", status="error") == 1

    @pytest.mark.asyncio
    async def test_rate_limit_partitions_by_user(self, registry):
        registry.register(search_tool(Handler(), rate_limit=RateLimitPolicy(max=1, window_ms=1000)))

        await registry.execute("search", {"query": "x"}, ExecutionContext(user_id="alice"))
        await registry.execute("search", {"query": "x"}, ExecutionContext(user_id="bob"))
        with pytest.raises(RateLimitExceeded):
            await registry.execute("search", {"query": "x"}, ExecutionContext(user_id="alice"))

    @pytest.mark.asyncio
    async def test_retryable_failure_retried_then_last_error_returned(self, registry, sleep):
        handler = Handler(error=MCPError("index unavailable", code="BACKEND_UNAVAILABLE"))
        registry.register(search_tool(handler))

        with pytest.raises(MCPError) as excinfo:
            await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=2))

        assert handler.calls == 3
        assert excinfo.value.code == "BACKEND_UNAVAILABLE"
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_invoked_once(self, registry):
        handler = Handler(error=MCPError("bad query", retryable=False))
        registry.register(search_tool(handler))

        with pytest.raises(MCPError):
            await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=2))

        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_bounds_the_wait(self, registry, sleep):
        finished = asyncio.Event()

        async def slow(args, context):
            try:
                await asyncio.sleep(0.5)
            finally:
                finished.set()

        registry.register(search_tool(slow, timeout_ms=50))

        started = time.monotonic()
        with pytest.raises(TimeoutError) as excinfo:
            await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=0))
        elapsed = time.monotonic() - started

        assert excinfo.value.code == "TIMEOUT"
        assert 0.045 <= elapsed < 0.45
        await asyncio.wait_for(finished.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self, registry, sleep):
        attempts = []

        async def slow(args, context):
            attempts.append(context.request_id)
            await asyncio.sleep(1)

        registry.register(search_tool(slow, timeout_ms=10))
        context = ExecutionContext(max_retries=1)

        with pytest.raises(TimeoutError):
            await registry.execute("search", {"query": "x"}, context)

        assert attempts == [context.request_id, context.request_id]
        assert sleep.delays == [1.0]


class TestMiddlewareOrdering:
    """Ordering of the chain decides what each middleware observes."""

    @pytest.mark.asyncio
    async def test_rate_limit_rejection_is_logged(self, registry, call_logs):
        registry.register(search_tool(Handler(), rate_limit=RateLimitPolicy(max=1, window_ms=1000)))

        await registry.execute("search", {"query": "x"})
        with pytest.raises(RateLimitExceeded):
            await registry.execute("search", {"query": "x"})

        failures = [r for r in call_logs() if r.levelno == logging.ERROR]
        assert len(failures) == 1
        assert failures[0].extra_fields["error_code"] == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_outermost_logging_records_one_outcome_per_execute(self, registry, call_logs):
        handler = Handler(error=TimeoutError("search", 10))
        registry.register(search_tool(handler))

        with pytest.raises(TimeoutError):
            await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=2))

        assert handler.calls == 3
        statuses = [r.extra_fields["status"] for r in call_logs()]
        assert statuses == ["started", "error"]

    @pytest.mark.asyncio
    async def test_every_failed_attempt_is_logged(self, registry, call_logs, retry_logs):
        handler = Handler(error=TimeoutError("search", 10))
        registry.register(search_tool(handler))
        context = ExecutionContext(max_retries=2)

        with pytest.raises(TimeoutError):
            await registry.execute("search", {"query": "x"}, context)

        retries = retry_logs()
        failures = [r for r in call_logs() if r.levelno == logging.ERROR]
        assert len(retries) + len(failures) == handler.calls == 3
        assert [r.extra_fields["attempt"] for r in retries] == [1, 2]
        assert {r.extra_fields["error_code"] for r in retries} == {"TIMEOUT"}
        assert {r.extra_fields["request_id"] for r in retries} == {context.request_id}

    @pytest.mark.asyncio
    async def test_recovered_failure_is_still_logged(self, registry, call_logs, retry_logs):
        attempts = []

        async def flaky(args, context):
            attempts.append(args.query)
            if len(attempts) == 1:
                raise MCPError("index warming up", code="BACKEND_UNAVAILABLE")
            return "found"

        registry.register(search_tool(flaky))

        await registry.execute("search", {"query": "x"})

        retries = retry_logs()
        assert len(retries) == 1
        assert retries[0].extra_fields["error_code"] == "BACKEND_UNAVAILABLE"
        statuses = [r.extra_fields["status"] for r in call_logs()]
        assert statuses == ["started", "success"]

    @pytest.mark.asyncio
    async def test_non_object_arguments_fail_once_without_retry(self, registry, sleep, call_logs):
        handler = Handler()
        registry.register(search_tool(handler))

        with pytest.raises(ValidationError):
            await registry.execute("search", ["oops"], ExecutionContext(max_retries=2))

        assert handler.calls == 0
        assert sleep.delays == []
        failures = [r for r in call_logs() if r.levelno == logging.ERROR]
        assert [r.extra_fields["error_code"] for r in failures] == ["VALIDATION_ERROR"]

    @pytest.mark.asyncio
    async def test_logging_inside_retry_sees_every_attempt(self, clock, sleep, call_logs):
        registry = ToolRegistry(metrics=InMemoryMetrics())
        registry.use(retry_middleware(sleep=sleep))
        registry.use(logging_middleware(logging.getLogger(CALL_LOGGER)))
        handler = Handler(error=TimeoutError("search", 10))
        registry.register(search_tool(handler))

        with pytest.raises(TimeoutError):
            await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=2))

        failures = [r for r in call_logs() if r.levelno == logging.ERROR]
        assert len(failures) == 3

    @pytest.mark.asyncio
    async def test_retry_outside_rate_limit_consumes_quota(self, clock, sleep):
        registry = ToolRegistry(metrics=InMemoryMetrics())
        registry.use(retry_middleware(sleep=sleep))
        registry.use(rate_limit_middleware(SlidingWindowLimiter(clock=clock)))
        handler = Handler()
        registry.register(search_tool(handler, rate_limit=RateLimitPolicy(max=1, window_ms=1500)))

        await registry.execute("search", {"query": "x"})
        # Rejected once, the retry sleeps 1s (still inside the window) and is
        # rejected again, then the second retry lands after the window.
        await registry.execute("search", {"query": "x"}, ExecutionContext(max_retries=2))

        assert handler.calls == 2
        assert sleep.delays == [1.0, 2.0]
