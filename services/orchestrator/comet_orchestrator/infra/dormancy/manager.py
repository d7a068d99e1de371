"""扩展休眠恢复：探测扩展 service worker 是否存活，并按由轻到重的顺序尝试唤醒。"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

from comet_orchestrator.domain.enums import WakeTechnique
from comet_orchestrator.domain.models import WakeResult
from comet_orchestrator.infra.browser.cdp import CdpEndpoint, CdpSession

BRIDGE_MARKER = "__COMET_TAB_GROUPS_BRIDGE__"
DEFAULT_EXTENSION_ID = "fjaeblhelfklejofdfbglhfinipofeaa"
TOGGLE_PAUSE_SECONDS = 0.3
_EXTENSION_URL_RE = re.compile(r"^chrome-extension://([a-z]{32})/")

logger = logging.getLogger(__name__)


def extract_extension_id(url: str) -> str | None:
    match = _EXTENSION_URL_RE.match(url or "")
    return match.group(1) if match else None


class DormancyManager:
    """扩展休眠管理器；唤醒为尽力而为，整体受硬超时约束。"""
    def __init__(
        self,
        endpoint: CdpEndpoint,
        *,
        extension_id: str | None = None,
        wake_timeout_seconds: float = 5.0,
        settle_seconds: float = 0.5,
    ) -> None:
        self._endpoint = endpoint
        self._configured_extension_id = extension_id
        self._cached_extension_id: str | None = None
        self._wake_timeout = wake_timeout_seconds
        self._settle = settle_seconds

    @property
    def extension_id(self) -> str | None:
        return self._cached_extension_id

    async def is_alive(self) -> bool:
        """同 check_alive，但探测失败按未存活处理。"""
        try:
            return await self.check_alive()
        except Exception as exc:
            logger.debug("extension liveness probe failed", extra={"event": "dormancy.probe.failed", "error": str(exc)})
            return False

    async def check_alive(self) -> bool:
        """存在桥接页或扩展 service worker 目标即视为存活；CDP 端点不可达时抛出。"""
        targets = await self._endpoint.list_targets()
        for target in targets:
            url = str(target.get("url") or "")
            is_bridge = BRIDGE_MARKER in url
            is_worker = target.get("type") == "service_worker" and url.startswith("chrome-extension://")
            if is_bridge or is_worker:
                extension_id = extract_extension_id(url)
                if extension_id:
                    self._cached_extension_id = extension_id
                return True
        return False

    async def wake(self) -> WakeResult:
        """依次尝试 page_target 与 management_toggle 两种唤醒方式。"""
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(self._wake_sequence(started), timeout=self._wake_timeout)
        except asyncio.TimeoutError:
            result = WakeResult(
                success=False,
                technique=WakeTechnique.none,
                attempts=2,
                duration_ms=_elapsed_ms(started),
                error="wake timeout",
            )
        extension_id = self._cached_extension_id or self._configured_extension_id
        log = logger.info if result.success else logger.warning
        log(
            "extension wake finished",
            extra={
                "event": "dormancy.wake.succeeded" if result.success else "dormancy.wake.failed",
                "duration_ms": result.duration_ms,
                "retry": result.attempts,
                "error": result.error,
                "payload_preview": {"technique": result.technique.value, "extension_id": extension_id},
            },
        )
        return result

    async def _resolve_extension_id(self) -> str:
        if self._cached_extension_id:
            return self._cached_extension_id
        if self._configured_extension_id:
            return self._configured_extension_id
        try:
            targets = await self._endpoint.list_targets()
        except Exception:
            targets = []
        for target in targets:
            extension_id = extract_extension_id(str(target.get("url") or ""))
            if extension_id:
                self._cached_extension_id = extension_id
                return extension_id
        return DEFAULT_EXTENSION_ID

    async def _wake_sequence(self, started: float) -> WakeResult:
        # 扩展 ID 的发现同样受硬超时约束。
        extension_id = await self._resolve_extension_id()
        try:
            await self._endpoint.new_target(f"chrome-extension://{extension_id}/background.js")
        except Exception as exc:
            logger.debug("page_target wake failed", extra={"event": "dormancy.page_target.failed", "error": str(exc)})
        else:
            await asyncio.sleep(self._settle)
            if await self.is_alive():
                return WakeResult(True, WakeTechnique.page_target, 1, _elapsed_ms(started))

        try:
            toggled = await self._management_toggle(extension_id)
        except Exception as exc:
            logger.debug(
                "management_toggle wake failed",
                extra={"event": "dormancy.management_toggle.failed", "error": str(exc)},
            )
            toggled = False
        if toggled:
            await asyncio.sleep(self._settle)
            if await self.is_alive():
                return WakeResult(True, WakeTechnique.management_toggle, 2, _elapsed_ms(started))

        return WakeResult(
            success=False,
            technique=WakeTechnique.none,
            attempts=2,
            duration_ms=_elapsed_ms(started),
            error="all wake techniques exhausted",
        )

    async def _management_toggle(self, extension_id: str) -> bool:
        """借助任一 page 目标调用 chrome.management 先禁用再启用扩展。"""
        targets: list[dict[str, Any]] = await self._endpoint.list_targets()
        page = next((item for item in targets if item.get("type") == "page" and item.get("webSocketDebuggerUrl")), None)
        if page is None:
            return False
        session = CdpSession(self._endpoint, command_timeout_seconds=self._wake_timeout, reconnect_attempts=1)
        await session.connect(page.get("id"))
        try:
            await session.evaluate(f"chrome.management.setEnabled('{extension_id}', false)")
            await asyncio.sleep(TOGGLE_PAUSE_SECONDS)
            await session.evaluate(f"chrome.management.setEnabled('{extension_id}', true)")
        finally:
            await session.close()
        return True


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
