"""编排服务场景测试：同步/异步委派、可选步骤、步骤失败、超时、取消与互斥约束。"""

import asyncio

import pytest

from comet_orchestrator.domain.enums import ErrorCode, ResultStatus, StepStatus, TaskState
from comet_orchestrator.domain.models import TaskTemplate, TaskTemplateStep
from comet_orchestrator.domain.providers import LOCAL_PROVIDER, REMOTE_PROVIDER


def _remote_template(name: str, *, second_optional: bool) -> TaskTemplate:
    return TaskTemplate(
        name=name,
        description="navigate then click",
        trigger_patterns=(),
        steps=(
            TaskTemplateStep("comet_navigate", REMOTE_PROVIDER, "Navigate", {"url": "https://example.com"}),
            TaskTemplateStep("comet_click", REMOTE_PROVIDER, "Click", {"selector": "#go"}, optional=second_optional),
        ),
    )


async def _wait_for_result(orchestrator, task_id: str):
    for _ in range(200):
        task = orchestrator.get_task_status(task_id)
        if task.result is not None:
            return task
        await asyncio.sleep(0.01)
    raise AssertionError(f"task {task_id} did not finish")


@pytest.mark.asyncio
async def test_screenshot_runs_single_local_step(orchestrator, local_tools) -> None:
    """“take a screenshot” 命中截图模板，单步本地执行成功。"""
    await orchestrator.initialize()

    result = await orchestrator.delegate("take a screenshot")

    assert result.status == ResultStatus.success
    assert result.steps_completed == result.steps_total == 1
    assert result.tools_invoked == ["comet_screenshot"]
    assert result.payload["format"] == "png"
    assert local_tools.calls == ["comet_screenshot"]

    task = orchestrator.get_task_status(result.task_id)
    assert task.state == TaskState.completed
    assert task.completed_at is not None
    assert task.result is result


@pytest.mark.asyncio
async def test_no_match_returns_enrichment_fallback(orchestrator, registry) -> None:
    """未命中模板时返回可恢复的失败结果，附带模板候选、工具目录与健康快照。"""
    await orchestrator.initialize()

    result = await orchestrator.delegate("do something unrecognized xyz")

    assert result.status == ResultStatus.failure
    assert result.error.code == ErrorCode.no_template_match
    assert result.error.recoverable is True
    payload = result.payload
    assert payload.matched is False
    assert [item.name for item in payload.available_templates] == [item.name for item in registry.get_all()]
    assert all(0.0 <= item.confidence <= 1.0 for item in payload.available_templates)
    assert {"name": "comet_ask", "category": "ai", "server": LOCAL_PROVIDER} in payload.tool_inventory
    assert set(payload.server_health) == {"browser", LOCAL_PROVIDER, "comet-monitor", "extension"}


@pytest.mark.asyncio
async def test_enrichment_fallback_prefers_cached_health(orchestrator, browser) -> None:
    await orchestrator.health()
    await orchestrator.delegate("do something unrecognized xyz")
    assert browser.version_calls == 1


@pytest.mark.asyncio
async def test_unknown_forced_template(orchestrator) -> None:
    result = await orchestrator.delegate("take a screenshot", template="missing-template")

    assert result.status == ResultStatus.failure
    assert result.error.code == ErrorCode.invalid_template
    assert result.error.recoverable is False


@pytest.mark.asyncio
async def test_optional_step_failure_is_skipped(orchestrator, registry, bridge) -> None:
    """可选步骤失败时标记 skipped 并继续，任务整体成功。"""
    registry.register(_remote_template("navigate-click", second_optional=True))
    bridge.failures["comet_click"] = "element not found"
    await orchestrator.initialize()

    result = await orchestrator.delegate("anything", template="navigate-click")

    assert result.status == ResultStatus.success
    assert result.tools_invoked == ["comet_navigate", "comet_click"]
    assert result.steps_completed == result.steps_total == 2
    task = orchestrator.get_task_status(result.task_id)
    assert task.steps[0].status == StepStatus.completed
    assert task.steps[1].status == StepStatus.skipped
    assert task.steps[1].result == "element not found"


@pytest.mark.asyncio
async def test_required_step_failure_stops_task(orchestrator, registry, bridge) -> None:
    """非可选步骤失败时任务失败，并报告失败步骤索引。"""
    registry.register(_remote_template("navigate-click", second_optional=False))
    bridge.failures["comet_navigate"] = "net::ERR_NAME_NOT_RESOLVED"
    await orchestrator.initialize()

    result = await orchestrator.delegate("anything", template="navigate-click")

    assert result.status == ResultStatus.failure
    assert result.error.code == ErrorCode.step_failed
    assert result.error.failed_step == 0
    assert result.error.recoverable is False
    assert result.steps_completed == 0
    assert result.tools_invoked == []
    assert [name for name, _ in bridge.calls] == ["comet_navigate"]
    assert orchestrator.get_task_status(result.task_id).state == TaskState.failed


@pytest.mark.asyncio
async def test_remote_steps_are_invoked_by_qualified_name(orchestrator, bridge) -> None:
    """与本地同名的远端工具按限定名调用，不会被路由到本地提供方。"""
    await orchestrator.initialize()

    result = await orchestrator.delegate("open https://example.com/docs")

    assert result.status == ResultStatus.success
    assert bridge.calls == [("comet_navigate", {"url": "https://example.com/docs"})]


@pytest.mark.asyncio
async def test_unregistered_local_tool_fails_step(orchestrator, local_tools) -> None:
    local_tools.failures["comet_mode"] = RuntimeError("mode selector for research not found")

    result = await orchestrator.delegate("research tidal energy")

    assert result.status == ResultStatus.failure
    assert result.error.failed_step == 1
    assert result.steps_completed == 1
    assert result.tools_invoked == ["comet_connect"]


@pytest.mark.asyncio
async def test_deadline_reports_partial_progress(orchestrator, local_tools) -> None:
    """超过截止时间后返回 partial，保留已完成的步骤。"""
    local_tools.delay = 0.1

    result = await orchestrator.delegate("research tidal energy", timeout_ms=30)

    assert result.status == ResultStatus.partial
    assert result.error.code == ErrorCode.timeout
    assert result.error.failed_step == 1
    assert result.steps_completed == 1
    assert result.steps_total == 4
    assert orchestrator.get_task_status(result.task_id).state == TaskState.failed


@pytest.mark.asyncio
async def test_async_delegation_can_be_polled(orchestrator) -> None:
    result = await orchestrator.delegate("take a screenshot", async_=True)

    assert result.status == ResultStatus.pending
    assert result.payload == {"task_id": result.task_id}
    assert result.steps_total == 1

    task = await _wait_for_result(orchestrator, result.task_id)
    assert task.state == TaskState.completed
    assert task.result.status == ResultStatus.success


@pytest.mark.asyncio
async def test_cancel_queued_and_running_tasks(orchestrator, local_tools, queue) -> None:
    """取消排队任务立即了结；取消运行中任务在下一步骤边界生效。"""
    local_tools.delay = 0.05
    running = await orchestrator.delegate("research tidal energy", target_id="tab-1", async_=True)
    queued = await orchestrator.delegate("take a screenshot", target_id="tab-1", async_=True)
    await asyncio.sleep(0.01)

    assert orchestrator.get_task_status(running.task_id).state == TaskState.running
    assert orchestrator.get_task_status(queued.task_id).state == TaskState.pending

    assert orchestrator.cancel_task(queued.task_id) is True
    queued_task = orchestrator.get_task_status(queued.task_id)
    assert queued_task.state == TaskState.cancelled
    assert queued_task.result.status == ResultStatus.cancelled
    assert queue.get_queue_depth("tab-1") == 0

    assert orchestrator.cancel_task(running.task_id) is True
    running_task = await _wait_for_result(orchestrator, running.task_id)
    assert running_task.state == TaskState.cancelled
    assert running_task.result.status == ResultStatus.cancelled
    assert running_task.result.steps_completed == 1
    assert local_tools.calls == ["comet_connect"]
    assert "comet_screenshot" not in local_tools.calls


@pytest.mark.asyncio
async def test_cancel_finished_task_returns_false(orchestrator) -> None:
    result = await orchestrator.delegate("take a screenshot")

    assert orchestrator.cancel_task(result.task_id) is False
    assert orchestrator.cancel_task("missing") is False
    assert orchestrator.get_task_status(result.task_id).state == TaskState.completed


@pytest.mark.asyncio
async def test_local_steps_are_mutually_exclusive(orchestrator, local_tools) -> None:
    """本地步骤跨目标也串行执行。"""
    local_tools.delay = 0.03

    results = await asyncio.gather(
        orchestrator.delegate("take a screenshot", target_id="tab-1"),
        orchestrator.delegate("take a screenshot", target_id="tab-2"),
    )

    assert all(item.status == ResultStatus.success for item in results)
    assert local_tools.max_active == 1


@pytest.mark.asyncio
async def test_same_target_tasks_are_serialized(orchestrator, bridge) -> None:
    await orchestrator.initialize()
    bridge.delay = 0.03

    same = await asyncio.gather(
        orchestrator.delegate("open https://a.example", target_id="tab-1"),
        orchestrator.delegate("open https://b.example", target_id="tab-1"),
    )
    assert [item.status for item in same] == [ResultStatus.success, ResultStatus.success]
    assert bridge.max_active == 1
    assert [params["url"] for _, params in bridge.calls] == ["https://a.example", "https://b.example"]

    bridge.max_active = 0
    await asyncio.gather(
        orchestrator.delegate("open https://a.example", target_id="tab-1"),
        orchestrator.delegate("open https://b.example", target_id="tab-2"),
    )
    assert bridge.max_active == 2


@pytest.mark.asyncio
async def test_dormant_extension_is_woken_before_guarded_step(orchestrator, registry, dormancy) -> None:
    registry.register(
        TaskTemplate(
            name="list-groups",
            description="List tab groups",
            trigger_patterns=("tab groups",),
            steps=(TaskTemplateStep("comet_tab_groups", LOCAL_PROVIDER, "List groups"),),
        )
    )
    dormancy.alive = False

    result = await orchestrator.delegate("show tab groups", template="list-groups")

    assert result.status == ResultStatus.success
    assert dormancy.wake_calls == 1


@pytest.mark.asyncio
async def test_wake_failure_does_not_abort_step(orchestrator, registry, dormancy, local_tools) -> None:
    """唤醒失败只记录日志，步骤仍然执行。"""
    registry.register(
        TaskTemplate(
            name="list-groups",
            description="List tab groups",
            trigger_patterns=("tab groups",),
            steps=(TaskTemplateStep("comet_tab_groups", LOCAL_PROVIDER, "List groups"),),
        )
    )
    dormancy.alive = False
    dormancy.wake_error = RuntimeError("extension did not respond")

    result = await orchestrator.delegate("show tab groups", template="list-groups")

    assert result.status == ResultStatus.success
    assert local_tools.calls == ["comet_tab_groups"]


@pytest.mark.asyncio
async def test_shutdown_resolves_pending_waiters(orchestrator, local_tools) -> None:
    local_tools.delay = 0.2
    pending = await orchestrator.delegate("take a screenshot", target_id="tab-9", async_=True)
    await asyncio.sleep(0.01)

    await orchestrator.shutdown()

    task = orchestrator.get_task_status(pending.task_id)
    assert task.state == TaskState.cancelled
    assert task.result.status == ResultStatus.cancelled
    assert orchestrator.ready is False


def test_listings(orchestrator) -> None:
    templates = orchestrator.list_templates()
    assert templates[0]["name"] == "research-extract"
    assert templates[-1]["steps"][0]["tool_name"] == "comet_screenshot"

    tools = orchestrator.list_tools()
    assert {"mcp:comet_ask", "mcp:comet_screenshot"} <= {item["qualified_name"] for item in tools}


@pytest.mark.asyncio
async def test_explicit_zero_timeout_is_not_replaced_by_default(orchestrator, local_tools) -> None:
    """显式传入 timeout_ms=0 时按零超时执行，不回落到默认值。"""
    result = await orchestrator.delegate("take a screenshot", timeout_ms=0)

    assert result.status == ResultStatus.partial
    assert result.error.code == ErrorCode.timeout
    assert result.error.failed_step == 0
    assert orchestrator.get_task_status(result.task_id).timeout_ms == 0
    assert local_tools.calls == []
