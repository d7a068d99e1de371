"""任务执行器：按截止时间逐步驱动任务步骤，处理可选步骤跳过、取消检查与休眠唤醒前置保护。"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from comet_orchestrator.domain.enums import ErrorCode, ResultStatus, StepStatus, TaskState
from comet_orchestrator.domain.models import TaskDelegation, TaskError, TaskResult, TaskStep, ToolResult, now_ms
from comet_orchestrator.domain.providers import LOCAL_PROVIDER, qualify, requires_wake
from comet_orchestrator.infra.logging.context import bind_log_context

LocalToolInvoker = Callable[[str, dict[str, Any]], Awaitable[Any]]

logger = logging.getLogger(__name__)


class StepExecutionError(RuntimeError):
    pass


class RemoteInvoker(Protocol):
    async def invoke(self, name: str, params: dict[str, Any]) -> ToolResult: ...


class WakeGuard(Protocol):
    async def is_alive(self) -> bool: ...

    async def wake(self) -> Any: ...


def failure_result(
    code: ErrorCode,
    message: str,
    *,
    payload: Any = None,
    recoverable: bool = False,
    task_id: str | None = None,
) -> TaskResult:
    """构造未进入执行阶段的失败结果（模板无效或未命中）。"""
    return TaskResult(
        status=ResultStatus.failure,
        payload=payload,
        error=TaskError(code=code, message=message, recoverable=recoverable),
        task_id=task_id,
    )


def cancelled_result(
    task: TaskDelegation,
    *,
    steps_completed: int = 0,
    tools_invoked: list[str] | None = None,
    payload: Any = None,
) -> TaskResult:
    started = task.started_at or now_ms()
    return TaskResult(
        status=ResultStatus.cancelled,
        payload=payload,
        duration_ms=max(0, (task.completed_at or now_ms()) - started),
        tools_invoked=list(tools_invoked or []),
        steps_completed=steps_completed,
        steps_total=len(task.steps),
        error=TaskError(code=ErrorCode.cancelled, message="task was cancelled", recoverable=True, failed_step=None),
        task_id=task.id,
    )


class TaskExecutor:
    """单任务步骤循环。

    调用前任务必须已由队列置为 running 并打上 started_at；
    本地提供方的步骤在进程级互斥锁内执行，远端步骤经路由器按限定名分发。
    """
    def __init__(
        self,
        *,
        router: RemoteInvoker,
        local_handler: LocalToolInvoker,
        dormancy: WakeGuard,
        local_lock: asyncio.Lock | None = None,
    ) -> None:
        self._router = router
        self._local_handler = local_handler
        self._dormancy = dormancy
        self._local_lock = local_lock or asyncio.Lock()

    async def run(self, task: TaskDelegation) -> TaskResult:
        with bind_log_context(task_id=task.id, target_id=task.target_id):
            return await self._run(task)

    async def _run(self, task: TaskDelegation) -> TaskResult:
        if task.started_at is None:
            task.started_at = now_ms()
        deadline = task.started_at + task.timeout_ms
        tools_invoked: list[str] = []
        last_result: Any = None
        total = len(task.steps)
        logger.info(
            "task started",
            extra={
                "event": "task.started",
                "payload_preview": {"template": task.template_name, "steps": total, "timeout_ms": task.timeout_ms},
            },
        )

        for index, step in enumerate(task.steps):
            # 取消在步骤边界生效，已发出的工具调用不会被打断。
            if task.state == TaskState.cancelled:
                return self._cancelled(task, index, tools_invoked, last_result)

            if now_ms() >= deadline:
                task.state = TaskState.failed
                task.completed_at = now_ms()
                logger.warning(
                    "task timed out",
                    extra={"event": "task.timeout", "duration_ms": task.completed_at - task.started_at, "op": step.tool_name},
                )
                return TaskResult(
                    status=ResultStatus.partial,
                    payload=last_result,
                    duration_ms=task.completed_at - task.started_at,
                    tools_invoked=tools_invoked,
                    steps_completed=index,
                    steps_total=total,
                    error=TaskError(
                        code=ErrorCode.timeout,
                        message=f"task timed out after {task.timeout_ms}ms",
                        recoverable=False,
                        failed_step=index,
                    ),
                    task_id=task.id,
                )

            task.current_step_index = index
            step.status = StepStatus.running
            step_started = now_ms()
            try:
                await self._guard_dormancy(step)
                result = await self._dispatch(step)
            except Exception as exc:
                step.duration_ms = now_ms() - step_started
                step.result = str(exc)
                if step.optional:
                    step.status = StepStatus.skipped
                    tools_invoked.append(step.tool_name)
                    logger.info(
                        "optional step skipped",
                        extra={
                            "event": "task.step.skipped",
                            "op": step.tool_name,
                            "duration_ms": step.duration_ms,
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        },
                    )
                    continue

                step.status = StepStatus.failed
                if task.state == TaskState.cancelled:
                    return self._cancelled(task, index, tools_invoked, last_result)
                task.state = TaskState.failed
                task.completed_at = now_ms()
                logger.error(
                    "task step failed",
                    extra={
                        "event": "task.step.failed",
                        "op": step.tool_name,
                        "duration_ms": step.duration_ms,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                        "payload_preview": step.params,
                    },
                )
                return TaskResult(
                    status=ResultStatus.failure,
                    payload=last_result,
                    duration_ms=task.completed_at - task.started_at,
                    tools_invoked=tools_invoked,
                    steps_completed=index,
                    steps_total=total,
                    error=TaskError(
                        code=ErrorCode.step_failed,
                        message=str(exc) or type(exc).__name__,
                        recoverable=False,
                        failed_step=index,
                    ),
                    task_id=task.id,
                )

            step.duration_ms = now_ms() - step_started
            step.result = result
            step.status = StepStatus.completed
            last_result = result
            tools_invoked.append(step.tool_name)
            logger.info(
                "task step completed",
                extra={"event": "task.step.completed", "op": step.tool_name, "duration_ms": step.duration_ms},
            )

        if task.state == TaskState.cancelled:
            return self._cancelled(task, total, tools_invoked, last_result)

        task.state = TaskState.completed
        task.completed_at = now_ms()
        duration_ms = task.completed_at - task.started_at
        logger.info(
            "task succeeded",
            extra={"event": "task.succeeded", "duration_ms": duration_ms, "payload_preview": tools_invoked},
        )
        return TaskResult(
            status=ResultStatus.success,
            payload=last_result,
            duration_ms=duration_ms,
            tools_invoked=tools_invoked,
            steps_completed=total,
            steps_total=total,
            task_id=task.id,
        )

    async def _guard_dormancy(self, step: TaskStep) -> None:
        """依赖扩展的步骤先确认扩展存活；唤醒失败只记录日志，步骤照常执行。"""
        if not requires_wake(step.tool_name):
            return
        try:
            if await self._dormancy.is_alive():
                return
            await self._dormancy.wake()
        except Exception as exc:
            logger.warning(
                "dormancy guard failed",
                extra={"event": "task.dormancy_guard.failed", "op": step.tool_name, "error": str(exc)},
            )

    async def _dispatch(self, step: TaskStep) -> Any:
        if step.provider_id == LOCAL_PROVIDER:
            async with self._local_lock:
                return await self._local_handler(step.tool_name, step.params)

        tool_result = await self._router.invoke(qualify(step.provider_id, step.tool_name), step.params)
        if not tool_result.success:
            raise StepExecutionError(tool_result.error or f"tool {step.tool_name} failed")
        return tool_result.data

    @staticmethod
    def _cancelled(task: TaskDelegation, index: int, tools_invoked: list[str], last_result: Any) -> TaskResult:
        logger.info("task cancelled", extra={"event": "task.cancelled", "payload_preview": {"steps_completed": index}})
        return cancelled_result(task, steps_completed=index, tools_invoked=tools_invoked, payload=last_result)
