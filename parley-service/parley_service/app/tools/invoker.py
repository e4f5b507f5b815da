"""모델이 요청한 도구 호출을 검증하고 실행하는 엔진이에요.

호출 하나(`ToolInvocation`)는 다음 상태를 거쳐요::

    call-started → args-complete → executing → result-ready
                                             ↘ failed

call id 하나당 실행은 최대 한 번이에요. 이미 결과가 나온 call id로 다시
호출하면 기록된 결과를 그대로 돌려주고, 실행 중인 call id로 호출하면 같은
실행을 기다려요. 서로 다른 call id는 동시에 실행될 수 있어요.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as SchemaValidationError

from parley_service.app.errors import (
    InvalidArgumentsError,
    ToolError,
    ToolExecutionFailedError,
    ToolTimeoutError,
    UnknownToolError,
)
from parley_service.app.tools.base import BaseTool, ToolContext, ToolResult
from parley_service.app.tools.registry import ToolRegistry
from libs.common.errors import DomainError
from libs.common.logging import get_logger

logger = get_logger("parley_service.tool_invoker")


class InvocationState(str, Enum):
    CALL_STARTED = "call-started"
    ARGS_COMPLETE = "args-complete"
    EXECUTING = "executing"
    RESULT_READY = "result-ready"
    FAILED = "failed"


@dataclass(slots=True)
class ToolInvocation:
    call_id: str
    tool_name: str
    state: InvocationState
    started_at: float
    args: dict[str, Any] | None = None
    result: ToolResult | None = None
    error: ToolError | None = None
    finished_at: float | None = None


def describe_schema_error(error: SchemaValidationError) -> tuple[str, str]:
    """스키마 오류에서 (위반한 필드 경로, 사유)를 뽑아요."""
    path = [str(part) for part in error.absolute_path]
    if error.validator == "required" and isinstance(error.instance, dict):
        missing = [name for name in error.validator_value if name not in error.instance]
        if missing:
            path.append(str(missing[0]))
    field = ".".join(path) if path else "$"
    return field, error.message


class ToolInvocationEngine:
    def __init__(self, registry: ToolRegistry, *, timeout_seconds: float) -> None:
        self._registry = registry
        self._timeout = timeout_seconds
        self._invocations: dict[str, ToolInvocation] = {}
        self._inflight: dict[str, asyncio.Task[ToolResult]] = {}
        self._validators: dict[str, Draft7Validator] = {}

    def begin(self, call_id: str, tool_name: str) -> ToolInvocation:
        """모델이 호출을 시작했을 때 상태를 기록해요."""
        invocation = self._invocations.get(call_id)
        if invocation is None:
            invocation = ToolInvocation(
                call_id=call_id,
                tool_name=tool_name,
                state=InvocationState.CALL_STARTED,
                started_at=time.monotonic(),
            )
            self._invocations[call_id] = invocation
        return invocation

    def get(self, call_id: str) -> ToolInvocation | None:
        return self._invocations.get(call_id)

    async def invoke(
        self,
        tool_name: str,
        args: dict[str, Any],
        call_id: str,
        context: ToolContext,
    ) -> ToolResult:
        """도구를 실행해요. 실패하면 `ToolError` 하위 예외를 던져요."""
        invocation = self.begin(call_id, tool_name)
        if invocation.state == InvocationState.RESULT_READY and invocation.result is not None:
            logger.info("tool_invocation_replayed", call_id=call_id, tool=tool_name)
            return invocation.result

        task = self._inflight.get(call_id)
        if task is None:
            task = asyncio.create_task(self._run(invocation, args, context))
            self._inflight[call_id] = task
            task.add_done_callback(lambda done: self._on_task_done(call_id, done))
        # 호출한 쪽이 취소돼도 실행 자체는 끝까지 진행돼요.
        return await asyncio.shield(task)

    def _on_task_done(self, call_id: str, task: asyncio.Task[ToolResult]) -> None:
        self._inflight.pop(call_id, None)
        # 기다리던 호출자가 먼저 취소되면 아무도 예외를 꺼내지 않아요.
        if not task.cancelled():
            task.exception()

    async def _run(self, invocation: ToolInvocation, args: dict[str, Any], context: ToolContext) -> ToolResult:
        try:
            tool = self._registry.get(invocation.tool_name)
            if tool is None:
                raise UnknownToolError(invocation.tool_name)

            self._validate(tool, args)
            invocation.args = args
            invocation.state = InvocationState.ARGS_COMPLETE

            invocation.state = InvocationState.EXECUTING
            result = await self._execute(tool, args, context)
        except ToolError as exc:
            invocation.state = InvocationState.FAILED
            invocation.error = exc
            invocation.finished_at = time.monotonic()
            logger.warning(
                "tool_invocation_failed",
                call_id=invocation.call_id,
                tool=invocation.tool_name,
                error_code=exc.error_code,
                error=exc.message,
            )
            raise

        invocation.state = InvocationState.RESULT_READY
        invocation.result = result
        invocation.finished_at = time.monotonic()
        logger.info(
            "tool_invocation_completed",
            call_id=invocation.call_id,
            tool=invocation.tool_name,
            elapsed_seconds=round(invocation.finished_at - invocation.started_at, 3),
        )
        return result

    def _validate(self, tool: BaseTool, args: dict[str, Any]) -> None:
        if not isinstance(args, dict):
            raise InvalidArgumentsError(tool.name, "$", "인자는 JSON 객체여야 해요.")
        validator = self._validators.get(tool.name)
        if validator is None:
            validator = Draft7Validator(tool.input_schema)
            self._validators[tool.name] = validator
        errors = sorted(validator.iter_errors(args), key=lambda err: list(err.absolute_path))
        if errors:
            field, reason = describe_schema_error(errors[0])
            raise InvalidArgumentsError(tool.name, field, reason)

    async def _execute(self, tool: BaseTool, args: dict[str, Any], context: ToolContext) -> ToolResult:
        try:
            result = await asyncio.wait_for(tool.execute(args, context), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ToolTimeoutError(tool.name, self._timeout) from exc
        except ToolError:
            raise
        except DomainError as exc:
            failure = ToolExecutionFailedError(tool.name, exc.message, retryable=exc.retryable)
            failure.cause_code = exc.error_code
            raise failure from exc
        except Exception as exc:
            logger.exception("tool_execute_unexpected_error", tool=tool.name, error=str(exc))
            raise ToolExecutionFailedError(tool.name, str(exc) or type(exc).__name__) from exc

        if not result.ok:
            raise ToolExecutionFailedError(tool.name, result.error or "알 수 없는 오류")
        return result
