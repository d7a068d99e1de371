"""健康检查测试：验证 TTL 缓存、强制刷新、探测失败降级与整体等级聚合。"""

import httpx
import pytest

from comet_orchestrator.domain.enums import HealthLevel, OverallHealth
from comet_orchestrator.domain.models import ComponentHealthResult
from comet_orchestrator.domain.providers import LOCAL_PROVIDER
from comet_orchestrator.infra.health.checker import MONITOR_COMPONENT, HealthChecker, derive_overall
from comet_orchestrator.infra.monitor.proxy import MonitorProxy


def _components(**levels: HealthLevel) -> dict[str, ComponentHealthResult]:
    names = {"browser": "browser", "local": LOCAL_PROVIDER, "monitor": MONITOR_COMPONENT, "extension": "extension"}
    return {names[key]: ComponentHealthResult(names[key], level) for key, level in levels.items()}


def test_derive_overall_levels() -> None:
    healthy = HealthLevel.healthy
    assert derive_overall(_components(browser=healthy, local=healthy, monitor=healthy, extension=healthy)) == OverallHealth.healthy
    assert (
        derive_overall(_components(browser=healthy, local=healthy, monitor=HealthLevel.unreachable, extension=healthy))
        == OverallHealth.degraded
    )
    assert (
        derive_overall(_components(browser=HealthLevel.unreachable, local=healthy, monitor=healthy, extension=healthy))
        == OverallHealth.down
    )


@pytest.mark.asyncio
async def test_check_is_cached_within_ttl(health_checker, browser) -> None:
    """TTL 内重复检查直接返回缓存，force=True 时重新探测。"""
    assert health_checker.get_cached() is None

    first = await health_checker.check()
    second = await health_checker.check()
    assert second is first
    assert browser.version_calls == 1
    assert health_checker.get_cached() is first

    forced = await health_checker.check(force=True)
    assert forced is not first
    assert browser.version_calls == 2


@pytest.mark.asyncio
async def test_all_components_healthy(health_checker) -> None:
    result = await health_checker.check()

    assert result.overall == OverallHealth.healthy
    assert set(result.components) == {"browser", LOCAL_PROVIDER, MONITOR_COMPONENT, "extension"}
    assert all(item.latency_ms is not None for item in result.components.values())


@pytest.mark.asyncio
async def test_failed_component_check_becomes_unreachable(health_checker, browser) -> None:
    """探测抛出异常时组件记为 unreachable，检查本身不抛出。"""
    browser.error = ConnectionRefusedError("connection refused")

    result = await health_checker.check()

    assert result.overall == OverallHealth.down
    assert result.components["browser"].status == HealthLevel.unreachable
    assert "connection refused" in result.components["browser"].reason


@pytest.mark.asyncio
async def test_slow_component_check_is_time_boxed(browser, router, monitor, dormancy) -> None:
    browser.delay = 1.0
    checker = HealthChecker(browser, router, monitor, dormancy, cache_ttl_ms=5_000, probe_timeout_ms=50)

    result = await checker.check()

    assert result.components["browser"].status == HealthLevel.unreachable
    assert "timed out" in result.components["browser"].reason
    assert result.components[LOCAL_PROVIDER].status == HealthLevel.healthy
    assert result.duration_ms < 1_000


@pytest.mark.asyncio
async def test_optional_components_degrade(health_checker, monitor, dormancy) -> None:
    monitor.available = False
    dormancy.alive = False

    result = await health_checker.check()

    assert result.overall == OverallHealth.degraded
    assert result.components[MONITOR_COMPONENT].status == HealthLevel.unreachable
    assert result.components["extension"].status == HealthLevel.degraded


@pytest.mark.asyncio
async def test_extension_check_error_is_unreachable(health_checker, dormancy) -> None:
    """CDP 端点不可达时扩展记为 unreachable 并附带原因，而不是休眠降级。"""
    dormancy.check_error = ConnectionRefusedError("cdp endpoint refused connection")

    result = await health_checker.check()

    extension = result.components["extension"]
    assert extension.status == HealthLevel.unreachable
    assert "refused" in extension.reason
    assert result.overall == OverallHealth.degraded


@pytest.mark.asyncio
async def test_monitor_proxy_drives_monitor_component(browser, router, dormancy) -> None:
    """监视服务返回错误状态码时 comet-monitor 记为 unreachable。"""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    proxy = MonitorProxy("http://monitor.test/api/state", transport=httpx.MockTransport(handler))
    checker = HealthChecker(browser, router, proxy, dormancy)

    result = await checker.check()

    assert result.components[MONITOR_COMPONENT].status == HealthLevel.unreachable
    assert result.components["browser"].status == HealthLevel.healthy
    await proxy.aclose()
