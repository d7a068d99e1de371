"""监视器代理：读取外部监视服务暴露的窗口与标签页状态，不可达时返回结构化的不可用结果。"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

DEFAULT_MONITOR_URL = "http://127.0.0.1:5555/api/state"
MONITOR_SECTIONS: tuple[str, ...] = ("windows", "tabs", "all")

logger = logging.getLogger(__name__)


def _unavailable(reason: str) -> dict[str, Any]:
    return {"available": False, "reason": f"comet-monitor unreachable: {reason}"}


class MonitorProxy:
    """监视服务 HTTP 代理。"""
    def __init__(
        self,
        url: str = DEFAULT_MONITOR_URL,
        *,
        timeout_seconds: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    @property
    def url(self) -> str:
        return self._url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_state(self, section: str = "all") -> dict[str, Any]:
        """按 section 返回窗口、标签页或全部状态；请求失败不抛出。"""
        if section not in MONITOR_SECTIONS:
            raise ValueError(f"unknown monitor section: {section}")
        started = time.perf_counter()
        try:
            response = await self._client.get(self._url)
        except httpx.HTTPError as exc:
            logger.debug(
                "monitor request failed",
                extra={
                    "event": "monitor.request.failed",
                    "external_service": "comet-monitor",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return _unavailable(str(exc) or type(exc).__name__)
        if response.is_error:
            return _unavailable(f"{response.status_code} {response.reason_phrase}")
        try:
            data = response.json()
        except ValueError:
            return _unavailable("invalid JSON response")
        if not isinstance(data, dict):
            return _unavailable("unexpected response shape")

        windows = [item for item in data.get("windows") or [] if isinstance(item, dict)]
        tabs = [item for item in data.get("tabs") or [] if isinstance(item, dict) and "id" in item and "url" in item]
        state: dict[str, Any] = {"available": True, "timestamp": data.get("timestamp")}
        if section in ("windows", "all"):
            window_count = data.get("window_count")
            state["windows"] = windows
            state["window_count"] = len(windows) if window_count is None else window_count
        if section in ("tabs", "all"):
            tab_count = data.get("tab_count")
            state["tabs"] = tabs
            state["tab_count"] = len(tabs) if tab_count is None else tab_count
        return state

    async def is_available(self) -> bool:
        try:
            response = await self._client.get(self._url)
        except httpx.HTTPError:
            return False
        return response.is_success
