"""依赖容器模块，负责单例化创建工具路由、任务队列、浏览器控制面与编排服务对象。"""

from __future__ import annotations

from functools import lru_cache

from comet_orchestrator.application.executor import TaskExecutor
from comet_orchestrator.application.orchestrator import TaskOrchestrator
from comet_orchestrator.config import get_settings
from comet_orchestrator.domain.providers import REMOTE_PROVIDER
from comet_orchestrator.domain.task_queue import TaskQueue
from comet_orchestrator.domain.templates.registry import TaskTemplateRegistry
from comet_orchestrator.infra.bridge.client import RemoteToolBridge
from comet_orchestrator.infra.browser.cdp import CdpEndpoint, CdpSession
from comet_orchestrator.infra.browser.local_tools import LocalToolHandler
from comet_orchestrator.infra.dormancy.manager import DormancyManager
from comet_orchestrator.infra.health.checker import HealthChecker
from comet_orchestrator.infra.monitor.proxy import MonitorProxy
from comet_orchestrator.infra.tools.catalog import local_tool_descriptors
from comet_orchestrator.infra.tools.router import ToolRouter


@lru_cache(maxsize=1)
def get_template_registry() -> TaskTemplateRegistry:
    return TaskTemplateRegistry()


@lru_cache(maxsize=1)
def get_task_queue() -> TaskQueue:
    return TaskQueue()


@lru_cache(maxsize=1)
def get_cdp_endpoint() -> CdpEndpoint:
    settings = get_settings()
    return CdpEndpoint(settings.cdp_base_url, timeout_seconds=settings.cdp_request_timeout_seconds)


@lru_cache(maxsize=1)
def get_cdp_session() -> CdpSession:
    """本地工具共用的唯一浏览器会话。"""
    return CdpSession(get_cdp_endpoint())


@lru_cache(maxsize=1)
def get_remote_bridge() -> RemoteToolBridge:
    settings = get_settings()
    return RemoteToolBridge(
        server_path=settings.browser_server_path,
        python_path=settings.browser_python_path,
        call_timeout_seconds=settings.bridge_call_timeout_seconds,
        max_restarts=settings.bridge_max_restarts,
        restart_delay_seconds=settings.bridge_restart_delay_seconds,
    )


@lru_cache(maxsize=1)
def get_tool_router() -> ToolRouter:
    settings = get_settings()
    return ToolRouter(
        local_tool_descriptors(),
        {REMOTE_PROVIDER: get_remote_bridge()},
        availability_timeout_seconds=settings.health_probe_timeout_ms / 1000,
    )


@lru_cache(maxsize=1)
def get_local_tool_handler() -> LocalToolHandler:
    return LocalToolHandler(get_cdp_endpoint(), get_cdp_session())


@lru_cache(maxsize=1)
def get_dormancy_manager() -> DormancyManager:
    settings = get_settings()
    return DormancyManager(
        get_cdp_endpoint(),
        extension_id=settings.extension_id,
        wake_timeout_seconds=settings.wake_timeout_ms / 1000,
        settle_seconds=settings.wake_settle_ms / 1000,
    )


@lru_cache(maxsize=1)
def get_monitor_proxy() -> MonitorProxy:
    settings = get_settings()
    return MonitorProxy(settings.monitor_url, timeout_seconds=settings.monitor_timeout_ms / 1000)


@lru_cache(maxsize=1)
def get_health_checker() -> HealthChecker:
    settings = get_settings()
    return HealthChecker(
        get_cdp_endpoint(),
        get_tool_router(),
        get_monitor_proxy(),
        get_dormancy_manager(),
        cache_ttl_ms=settings.health_cache_ttl_ms,
        probe_timeout_ms=settings.health_probe_timeout_ms,
    )


@lru_cache(maxsize=1)
def get_executor() -> TaskExecutor:
    return TaskExecutor(
        router=get_tool_router(),
        local_handler=get_local_tool_handler(),
        dormancy=get_dormancy_manager(),
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> TaskOrchestrator:
    settings = get_settings()
    return TaskOrchestrator(
        router=get_tool_router(),
        registry=get_template_registry(),
        queue=get_task_queue(),
        health_checker=get_health_checker(),
        executor=get_executor(),
        default_timeout_ms=settings.default_task_timeout_ms,
        # 先停子进程，再关闭浏览器会话与 HTTP 客户端。
        shutdown_hooks=(
            get_remote_bridge().stop,
            get_local_tool_handler().tab_groups.disconnect,
            get_cdp_session().close,
            get_monitor_proxy().aclose,
            get_cdp_endpoint().aclose,
        ),
    )


def reset_container() -> None:
    """清理依赖容器缓存，确保后续调用重新构建全新实例。"""
    for provider in (
        get_orchestrator,
        get_executor,
        get_health_checker,
        get_monitor_proxy,
        get_dormancy_manager,
        get_local_tool_handler,
        get_tool_router,
        get_remote_bridge,
        get_cdp_session,
        get_cdp_endpoint,
        get_task_queue,
        get_template_registry,
    ):
        provider.cache_clear()
