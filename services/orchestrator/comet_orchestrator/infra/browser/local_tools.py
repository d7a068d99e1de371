"""本地工具处理器：在宿主进程内执行本地提供方的工具，共享同一个 CDP 会话。"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from comet_orchestrator.infra.browser.assistant import CometAssistant
from comet_orchestrator.infra.browser.cdp import CdpEndpoint, CdpSession
from comet_orchestrator.infra.browser.tab_groups import TabGroupsClient, run_tab_groups_action

LocalToolFn = Callable[[dict[str, Any]], Awaitable[Any]]


class UnsupportedLocalToolError(RuntimeError):
    pass


class LocalToolHandler:
    """本地工具分发器。

    内置 comet_connect / comet_screenshot / comet_tab_groups 与 AI 类工具
    （comet_ask、comet_poll、comet_stop、comet_mode）；宿主可通过 register 覆盖任一实现。
    """
    def __init__(
        self,
        endpoint: CdpEndpoint,
        session: CdpSession,
        *,
        tab_groups: TabGroupsClient | None = None,
        assistant: CometAssistant | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._session = session
        self._tab_groups_client = tab_groups or TabGroupsClient(endpoint)
        self._assistant = assistant or CometAssistant(session)
        self._handlers: dict[str, LocalToolFn] = {
            "comet_connect": self._connect,
            "comet_screenshot": self._screenshot,
            "comet_tab_groups": self._tab_groups,
            "comet_ask": self._assistant.ask,
            "comet_poll": self._assistant.poll,
            "comet_stop": self._assistant.stop,
            "comet_mode": self._assistant.mode,
        }

    @property
    def session(self) -> CdpSession:
        return self._session

    @property
    def tab_groups(self) -> TabGroupsClient:
        return self._tab_groups_client

    def register(self, name: str, fn: LocalToolFn) -> None:
        """注册或覆盖本地工具实现。"""
        self._handlers[name] = fn

    def supported_tools(self) -> list[str]:
        return sorted(self._handlers)

    async def __call__(self, name: str, params: dict[str, Any]) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise UnsupportedLocalToolError(f"local tool {name} has no registered implementation")
        return await handler(params)

    async def _connect(self, params: dict[str, Any]) -> dict[str, Any]:
        target = await self._session.connect(params.get("target_id"))
        version = await self._endpoint.version()
        return {
            "connected": True,
            "browser": version.get("Browser"),
            "target": {"id": target.get("id"), "title": target.get("title"), "url": target.get("url")},
        }

    async def _screenshot(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self._session.connected:
            await self._session.connect(params.get("target_id"))
        image_format = str(params.get("format") or "png")
        data = await self._session.screenshot(image_format)
        return {"format": image_format, "data": data}

    async def _tab_groups(self, params: dict[str, Any]) -> dict[str, Any]:
        return await run_tab_groups_action(self._tab_groups_client, params)
