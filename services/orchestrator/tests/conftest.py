"""测试公共夹具：以轻量桩对象替代浏览器、远端工具桥与扩展，组装真实的编排服务。"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any

import pytest

# 应用模块导入时即初始化日志，测试日志统一写到临时目录。
os.environ.setdefault("LOG_DIR", str(Path(tempfile.gettempdir()) / "comet-orchestrator-tests"))

from comet_orchestrator.application.executor import TaskExecutor  # noqa: E402
from comet_orchestrator.application.orchestrator import TaskOrchestrator  # noqa: E402
from comet_orchestrator.domain.models import ToolResult  # noqa: E402
from comet_orchestrator.domain.providers import REMOTE_PROVIDER  # noqa: E402
from comet_orchestrator.domain.task_queue import TaskQueue  # noqa: E402
from comet_orchestrator.domain.templates.registry import TaskTemplateRegistry  # noqa: E402
from comet_orchestrator.infra.health.checker import HealthChecker  # noqa: E402
from comet_orchestrator.infra.tools.catalog import local_tool_descriptors, remote_tool_descriptor  # noqa: E402
from comet_orchestrator.infra.tools.router import ToolRouter  # noqa: E402

REMOTE_TOOL_NAMES = (
    "comet_connect",
    "comet_navigate",
    "comet_click",
    "comet_type",
    "comet_screenshot",
    "comet_get_content",
    "comet_find_elements",
    "comet_wait",
)


class StubBridge:
    """远端工具桥桩：记录调用，按名称注入失败与延迟。"""

    def __init__(self) -> None:
        self.tools = [remote_tool_descriptor({"name": name, "description": name}) for name in REMOTE_TOOL_NAMES]
        self.failures: dict[str, str] = {}
        self.list_error: Exception | None = None
        self.delay = 0.0
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.active = 0
        self.max_active = 0

    async def list_tools(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.tools)

    async def call_tool(self, name: str, params: dict[str, Any]) -> ToolResult:
        self.calls.append((name, dict(params)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if name in self.failures:
            return ToolResult(tool_name=name, provider_id=REMOTE_PROVIDER, success=False, error=self.failures[name])
        return ToolResult(tool_name=name, provider_id=REMOTE_PROVIDER, success=True, data={"tool": name, "params": params})


class StubLocalTools:
    """本地工具处理器桩。"""

    def __init__(self) -> None:
        self.failures: dict[str, Exception] = {}
        self.delay = 0.0
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, name: str, params: dict[str, Any]) -> Any:
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if name in self.failures:
            raise self.failures[name]
        if name == "comet_screenshot":
            return {"format": "png", "data": "iVBORw0KGgo="}
        return {"tool": name, "params": params}


class StubBrowser:
    def __init__(self) -> None:
        self.error: Exception | None = None
        self.delay = 0.0
        self.version_calls = 0

    async def version(self) -> dict[str, Any]:
        self.version_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"Browser": "Comet/1.0"}


class StubMonitor:
    def __init__(self) -> None:
        self.available = True

    async def is_available(self) -> bool:
        return self.available


class StubDormancy:
    def __init__(self) -> None:
        self.alive = True
        self.check_error: Exception | None = None
        self.wake_error: Exception | None = None
        self.wake_calls = 0

    async def is_alive(self) -> bool:
        return self.alive

    async def check_alive(self) -> bool:
        if self.check_error is not None:
            raise self.check_error
        return self.alive

    async def wake(self) -> None:
        self.wake_calls += 1
        if self.wake_error is not None:
            raise self.wake_error
        self.alive = True


@pytest.fixture()
def bridge() -> StubBridge:
    return StubBridge()


@pytest.fixture()
def local_tools() -> StubLocalTools:
    return StubLocalTools()


@pytest.fixture()
def browser() -> StubBrowser:
    return StubBrowser()


@pytest.fixture()
def dormancy() -> StubDormancy:
    return StubDormancy()


@pytest.fixture()
def monitor() -> StubMonitor:
    return StubMonitor()


@pytest.fixture()
def router(bridge: StubBridge) -> ToolRouter:
    return ToolRouter(local_tool_descriptors(), {REMOTE_PROVIDER: bridge}, availability_timeout_seconds=0.5)


@pytest.fixture()
def registry() -> TaskTemplateRegistry:
    return TaskTemplateRegistry()


@pytest.fixture()
def queue() -> TaskQueue:
    return TaskQueue()


@pytest.fixture()
def health_checker(
    browser: StubBrowser, router: ToolRouter, monitor: StubMonitor, dormancy: StubDormancy
) -> HealthChecker:
    return HealthChecker(browser, router, monitor, dormancy, cache_ttl_ms=5_000, probe_timeout_ms=500)


@pytest.fixture()
def orchestrator(
    router: ToolRouter,
    registry: TaskTemplateRegistry,
    queue: TaskQueue,
    health_checker: HealthChecker,
    local_tools: StubLocalTools,
    dormancy: StubDormancy,
) -> TaskOrchestrator:
    executor = TaskExecutor(router=router, local_handler=local_tools, dormancy=dormancy)
    return TaskOrchestrator(
        router=router,
        registry=registry,
        queue=queue,
        health_checker=health_checker,
        executor=executor,
        default_timeout_ms=5_000,
    )
