"""Per-invocation execution envelope.

Every tool call passes through the same four stages, stopping at the first
failure: schema validation, permission check, timeout-bounded execution and
response shaping.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from .errors import PermissionError, TimeoutError, ValidationError
from .models import CancellationToken, ExecutionContext, ToolDefinition, ToolResponse

logger = logging.getLogger("toolgate.envelope")

Handler = Callable[[Mapping[str, Any], ExecutionContext], Awaitable[ToolResponse]]


def build_envelope(tool: ToolDefinition, timeout_ms: Optional[int] = None) -> Handler:
    """Return the raw handler for ``tool``: the innermost link of the chain."""

    budget_ms = tool.timeout_ms if tool.timeout_ms is not None else timeout_ms
    if budget_ms is None:
        raise ValueError(f"Tool '{tool.name}' has no timeout and no default was provided")

    async def envelope(args: Mapping[str, Any], context: ExecutionContext) -> ToolResponse:
        validated = validate_arguments(tool, args)
        authorize(tool, context)
        result = await run_with_timeout(tool, validated, context, budget_ms)
        return shape_response(tool, result, context)

    envelope.__name__ = f"envelope[{tool.key}]"
    return envelope


def validate_arguments(tool: ToolDefinition, args: Optional[Mapping[str, Any]]) -> BaseModel:
    try:
        return tool.schema.model_validate(args if args is not None else {})
    except SchemaValidationError as exc:
        raise ValidationError(tool.name, exc.errors(include_url=False, include_context=False)) from exc


def authorize(tool: ToolDefinition, context: ExecutionContext) -> None:
    if not tool.permissions:
        return
    missing = context.missing_permissions(tool.permissions)
    if missing:
        raise PermissionError(tool.name, missing)


async def run_with_timeout(
    tool: ToolDefinition,
    validated: BaseModel,
    context: ExecutionContext,
    timeout_ms: int,
) -> Any:
    """Run the handler, waiting at most ``timeout_ms`` for it.

    When the budget runs out the handler's task is cancelled and its
    cancellation token is set; the caller gets :class:`TimeoutError`
    immediately, whether or not the handler honours the cancellation.
    """

    # Each run gets its own token so a timed-out attempt cannot cancel a retry.
    run_context = dataclasses.replace(context, cancellation=CancellationToken())
    task = asyncio.ensure_future(_invoke(tool.handler, validated, run_context))

    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
    except asyncio.CancelledError:
        run_context.cancellation.cancel()
        task.cancel()
        raise

    if task in done:
        return task.result()

    run_context.cancellation.cancel()
    task.cancel()
    task.add_done_callback(_discard_outcome)
    logger.debug(
        f"Tool {tool.name} exceeded {timeout_ms}ms; cancellation requested",
        extra={"extra_fields": {"tool": tool.name, "request_id": context.request_id, "timeout_ms": timeout_ms}},
    )
    raise TimeoutError(tool.name, timeout_ms)


async def _invoke(handler: Callable[..., Any], args: BaseModel, context: ExecutionContext) -> Any:
    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None)):
        return await handler(args, context)

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, functools.partial(handler, args, context))
    if inspect.isawaitable(result):
        result = await result
    return result


def _discard_outcome(task: asyncio.Future) -> None:
    # Late results of timed-out handlers are dropped.
    if not task.cancelled():
        task.exception()


def shape_response(tool: ToolDefinition, result: Any, context: ExecutionContext) -> ToolResponse:
    return ToolResponse(
        content=[{"type": "text", "text": serialize_result(result)}],
        metadata={
            "tool": tool.name,
            "version": tool.version,
            "request_id": context.request_id,
        },
    )


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    return json.dumps(result, indent=2, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return str(value)
