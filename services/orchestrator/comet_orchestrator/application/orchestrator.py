"""编排服务门面：模板解析、参数抽取、入队与按目标串行驱动执行，并提供状态查询、取消与健康聚合。"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict
from typing import Any
from uuid import uuid4

from comet_orchestrator.application.executor import TaskExecutor, cancelled_result, failure_result
from comet_orchestrator.domain.enums import ErrorCode, HealthLevel, ResultStatus, TaskState
from comet_orchestrator.domain.models import (
    EnrichmentPayload,
    HealthCheckResult,
    TaskDelegation,
    TaskResult,
    TemplateSuggestion,
    now_ms,
)
from comet_orchestrator.domain.task_queue import TaskQueue, target_key
from comet_orchestrator.domain.templates.params import extract_params_for_template, keyword_overlap
from comet_orchestrator.domain.templates.planner import build_task_steps
from comet_orchestrator.domain.templates.registry import TaskTemplateRegistry
from comet_orchestrator.infra.health.checker import HealthChecker
from comet_orchestrator.infra.logging.context import bind_log_context
from comet_orchestrator.infra.tools.router import ToolRouter

DEFAULT_TIMEOUT_MS = 60_000

ShutdownHook = Callable[[], Awaitable[None]]

logger = logging.getLogger(__name__)


class TaskOrchestrator:
    """编排服务门面，对外暴露 initialize / health / delegate / get_task_status / cancel_task。

    每个目标对应一个排空协程：循环 dequeue → 执行 → complete_active，
    同步调用方等待任务的完成 future，异步调用方立即拿到 pending 结果。
    """
    def __init__(
        self,
        *,
        router: ToolRouter,
        registry: TaskTemplateRegistry,
        queue: TaskQueue,
        health_checker: HealthChecker,
        executor: TaskExecutor,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        shutdown_hooks: Sequence[ShutdownHook] = (),
    ) -> None:
        self._router = router
        self._registry = registry
        self._queue = queue
        self._health_checker = health_checker
        self._executor = executor
        self._default_timeout_ms = default_timeout_ms
        self._shutdown_hooks = list(shutdown_hooks)
        self._waiters: dict[str, asyncio.Future[TaskResult]] = {}
        self._drains: dict[str, asyncio.Task[None]] = {}
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """加载工具目录；远端提供方不可用时仍以本地工具目录就绪。"""
        await self._router.initialize()
        self._ready = True

    async def health(self, force: bool = False) -> HealthCheckResult:
        return await self._health_checker.check(force)

    async def delegate(
        self,
        description: str,
        *,
        target_id: str | None = None,
        timeout_ms: int | None = None,
        async_: bool = False,
        template: str | None = None,
    ) -> TaskResult:
        """委派自然语言任务；显式模板优先，其次按描述匹配，未命中时返回富化回退结果。"""
        if template:
            selected = self._registry.get(template)
            if selected is None:
                return failure_result(ErrorCode.invalid_template, f'template "{template}" not found')
        else:
            selected = self._registry.match(description)
            if selected is None:
                return await self._enrichment_fallback(description)

        extracted = extract_params_for_template(description, selected)
        task = TaskDelegation(
            id=str(uuid4()),
            description=description,
            template_name=selected.name,
            steps=build_task_steps(selected, extracted),
            timeout_ms=self._default_timeout_ms if timeout_ms is None else timeout_ms,
            target_id=target_id,
        )
        waiter: asyncio.Future[TaskResult] = asyncio.get_running_loop().create_future()
        self._waiters[task.id] = waiter
        self._queue.enqueue(task)
        with bind_log_context(task_id=task.id, target_id=target_id):
            logger.info(
                "task enqueued",
                extra={
                    "event": "task.enqueued",
                    "payload_preview": {
                        "template": selected.name,
                        "async": async_,
                        "queue_depth": self._queue.get_queue_depth(target_key(target_id)),
                    },
                },
            )
        self._ensure_drain(target_key(target_id))

        if async_:
            return TaskResult(
                status=ResultStatus.pending,
                payload={"task_id": task.id},
                steps_total=len(task.steps),
                task_id=task.id,
            )
        # 调用方被取消时任务继续执行，结果仍可通过轮询读取。
        return await asyncio.shield(waiter)

    def get_task_status(self, task_id: str) -> TaskDelegation | None:
        return self._queue.get_task(task_id)

    def cancel_task(self, task_id: str) -> bool:
        """取消任务；仍在排队的任务立即以 cancelled 结果了结，运行中的任务在下一步骤边界退出。"""
        task = self._queue.get_task(task_id)
        was_queued = task is not None and task.state == TaskState.pending
        cancelled = self._queue.cancel(task_id)
        if cancelled and was_queued and task is not None:
            self._finish(task, cancelled_result(task))
        if cancelled:
            logger.info("task cancel requested", extra={"event": "task.cancel.requested", "task_id": task_id})
        return cancelled

    def list_templates(self) -> list[dict[str, Any]]:
        return [
            {
                "name": template.name,
                "description": template.description,
                "trigger_patterns": list(template.trigger_patterns),
                "steps": [asdict(step) for step in template.steps],
            }
            for template in self._registry.get_all()
        ]

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "qualified_name": tool.qualified_name,
                "provider_id": tool.provider_id,
                "category": tool.category.value,
                "description": tool.description,
                "is_canonical": tool.is_canonical,
            }
            for tool in self._router.get_inventory()
        ]

    async def shutdown(self) -> None:
        """停止排空协程并释放外部资源；未了结的等待方以 cancelled 结果返回。"""
        unfinished = list(self._waiters)
        for task_id in unfinished:
            self._queue.cancel(task_id)
        drains, self._drains = list(self._drains.values()), {}
        for drain in drains:
            drain.cancel()
        await asyncio.gather(*drains, return_exceptions=True)
        for task_id in unfinished:
            task = self._queue.get_task(task_id)
            if task is not None:
                self._finish(task, cancelled_result(task))
        self._waiters.clear()
        for hook in self._shutdown_hooks:
            try:
                await hook()
            except Exception as exc:
                logger.warning(
                    "shutdown hook failed",
                    extra={"event": "orchestrator.shutdown.hook_failed", "error_type": type(exc).__name__, "error": str(exc)},
                )
        self._ready = False

    def _ensure_drain(self, key: str) -> None:
        drain = self._drains.get(key)
        if drain is None or drain.done():
            self._drains[key] = asyncio.create_task(self._drain(key), name=f"task-drain:{key}")

    async def _drain(self, key: str) -> None:
        """按 FIFO 依次执行同一目标的任务，保证同一目标至多一个任务处于 running。"""
        while True:
            task = self._queue.dequeue(key)
            if task is None:
                return
            try:
                result = await self._executor.run(task)
            except Exception as exc:
                logger.exception(
                    "task execution crashed",
                    extra={"event": "task.crashed", "task_id": task.id, "error_type": type(exc).__name__, "error": str(exc)},
                )
                if not task.state.is_terminal:
                    task.state = TaskState.failed
                    task.completed_at = now_ms()
                result = failure_result(ErrorCode.step_failed, str(exc) or type(exc).__name__, task_id=task.id)
                result.steps_total = len(task.steps)
                if result.error is not None:
                    result.error.failed_step = task.current_step_index
            finally:
                self._queue.complete_active(key)
            self._finish(task, result)

    def _finish(self, task: TaskDelegation, result: TaskResult) -> None:
        task.result = result
        waiter = self._waiters.pop(task.id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)

    async def _enrichment_fallback(self, description: str) -> TaskResult:
        """未命中模板时返回候选模板重合度、完整工具目录与组件健康快照。"""
        suggestions = [
            TemplateSuggestion(
                name=template.name,
                description=template.description,
                confidence=keyword_overlap(description, template),
            )
            for template in self._registry.get_all()
        ]
        inventory = [
            {"name": tool.name, "category": tool.category.value, "server": tool.provider_id}
            for tool in self._router.get_inventory()
        ]
        snapshot = self._health_checker.get_cached()
        if snapshot is None:
            snapshot = await self._health_checker.check()
        server_health: dict[str, HealthLevel] = {name: item.status for name, item in snapshot.components.items()}

        logger.info(
            "no template matched",
            extra={"event": "task.template.unmatched", "payload_preview": {"description": description}},
        )
        return failure_result(
            ErrorCode.no_template_match,
            "no template matched the description; see payload for enrichment data",
            payload=EnrichmentPayload(
                description=description,
                available_templates=suggestions,
                tool_inventory=inventory,
                server_health=server_health,
                matched=False,
            ),
            recoverable=True,
        )
