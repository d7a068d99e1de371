"""健康检查：并行探测浏览器、本地工具提供方、监视服务以及扩展，聚合为整体健康等级并按 TTL 缓存。"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from comet_orchestrator.domain.enums import HealthLevel, OverallHealth
from comet_orchestrator.domain.models import ComponentHealthResult, HealthCheckResult, now_ms
from comet_orchestrator.domain.providers import LOCAL_PROVIDER

BROWSER_COMPONENT = "browser"
MONITOR_COMPONENT = "comet-monitor"
EXTENSION_COMPONENT = "extension"
MANDATORY_COMPONENTS: tuple[str, ...] = (BROWSER_COMPONENT, LOCAL_PROVIDER)
OPTIONAL_COMPONENTS: tuple[str, ...] = (MONITOR_COMPONENT, EXTENSION_COMPONENT)

ProbeFn = Callable[[], Awaitable[ComponentHealthResult]]

logger = logging.getLogger(__name__)


class BrowserProbe(Protocol):
    async def version(self) -> dict: ...


class ProviderProbe(Protocol):
    async def is_server_available(self, provider_id: str) -> bool: ...


class MonitorProbe(Protocol):
    async def is_available(self) -> bool: ...


class ExtensionProbe(Protocol):
    async def check_alive(self) -> bool: ...


def derive_overall(components: dict[str, ComponentHealthResult]) -> OverallHealth:
    """必选组件任一不健康即 down；必选全部健康而可选组件不健康为 degraded。"""
    for name in MANDATORY_COMPONENTS:
        component = components.get(name)
        if component is None or component.status != HealthLevel.healthy:
            return OverallHealth.down
    for name in OPTIONAL_COMPONENTS:
        component = components.get(name)
        if component is not None and component.status != HealthLevel.healthy:
            return OverallHealth.degraded
    return OverallHealth.healthy


class HealthChecker:
    """组件健康检查器。

    各探测独立限时；探测超时或抛出异常时该组件记为 unreachable 并附带原因。
    缓存在 TTL 内直接返回，force=True 时跳过缓存。
    """
    def __init__(
        self,
        browser: BrowserProbe,
        router: ProviderProbe,
        monitor: MonitorProbe,
        extension: ExtensionProbe,
        *,
        cache_ttl_ms: int = 5_000,
        probe_timeout_ms: int = 3_000,
    ) -> None:
        self._browser = browser
        self._router = router
        self._monitor = monitor
        self._extension = extension
        self._cache_ttl_ms = cache_ttl_ms
        self._probe_timeout = probe_timeout_ms / 1000
        self._cached: HealthCheckResult | None = None

    def get_cached(self) -> HealthCheckResult | None:
        return self._cached

    async def check(self, force: bool = False) -> HealthCheckResult:
        cached = self._cached
        if not force and cached is not None and now_ms() - cached.checked_at < self._cache_ttl_ms:
            return cached

        started = time.perf_counter()
        probes: dict[str, ProbeFn] = {
            BROWSER_COMPONENT: self._probe_browser,
            LOCAL_PROVIDER: lambda: self._probe_provider(LOCAL_PROVIDER),
            MONITOR_COMPONENT: self._probe_monitor,
            EXTENSION_COMPONENT: self._probe_extension,
        }
        results = await asyncio.gather(*(self._run_probe(name, probe) for name, probe in probes.items()))
        components = {item.name: item for item in results}
        result = HealthCheckResult(
            overall=derive_overall(components),
            components=components,
            checked_at=now_ms(),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        self._cached = result
        level = logging.INFO if result.overall == OverallHealth.healthy else logging.WARNING
        logger.log(
            level,
            "health check completed",
            extra={
                "event": "health.check.completed",
                "duration_ms": result.duration_ms,
                "payload_preview": {name: item.status.value for name, item in components.items()},
            },
        )
        return result

    async def _run_probe(self, name: str, probe: ProbeFn) -> ComponentHealthResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(probe(), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            reason = f"probe timed out after {int(self._probe_timeout * 1000)}ms"
            return ComponentHealthResult(name, HealthLevel.unreachable, reason, _elapsed_ms(started))
        except Exception as exc:
            logger.debug(
                "health probe failed",
                extra={"event": "health.probe.failed", "op": name, "error_type": type(exc).__name__, "error": str(exc)},
            )
            return ComponentHealthResult(name, HealthLevel.unreachable, str(exc) or type(exc).__name__, _elapsed_ms(started))
        if result.latency_ms is None:
            result.latency_ms = _elapsed_ms(started)
        return result

    async def _probe_browser(self) -> ComponentHealthResult:
        version = await self._browser.version()
        if not version:
            return ComponentHealthResult(BROWSER_COMPONENT, HealthLevel.degraded, "empty version response")
        return ComponentHealthResult(BROWSER_COMPONENT, HealthLevel.healthy)

    async def _probe_provider(self, provider_id: str) -> ComponentHealthResult:
        if await self._router.is_server_available(provider_id):
            return ComponentHealthResult(provider_id, HealthLevel.healthy)
        return ComponentHealthResult(provider_id, HealthLevel.unreachable, "tool provider unavailable")

    async def _probe_monitor(self) -> ComponentHealthResult:
        if await self._monitor.is_available():
            return ComponentHealthResult(MONITOR_COMPONENT, HealthLevel.healthy)
        return ComponentHealthResult(MONITOR_COMPONENT, HealthLevel.unreachable, "monitor state endpoint unavailable")

    async def _probe_extension(self) -> ComponentHealthResult:
        # CDP 端点不可达时 check_alive 抛出，由 _run_probe 记为 unreachable。
        if await self._extension.check_alive():
            return ComponentHealthResult(EXTENSION_COMPONENT, HealthLevel.healthy)
        return ComponentHealthResult(EXTENSION_COMPONENT, HealthLevel.degraded, "extension service worker dormant")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
