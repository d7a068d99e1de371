"""标签页分组：连接带桥接标记的扩展 service worker，在其上下文中调用 chrome.tabGroups / chrome.tabs。"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from comet_orchestrator.infra.browser.cdp import BrowserControlError, CdpEndpoint, CdpSession

BRIDGE_MARKER = "__COMET_TAB_GROUPS_BRIDGE__"
TAB_GROUP_COLORS: frozenset[str] = frozenset(
    {"grey", "blue", "red", "yellow", "green", "pink", "purple", "cyan", "orange"}
)
TAB_GROUP_ACTIONS: tuple[str, ...] = ("list", "list_tabs", "create", "update", "move", "ungroup", "delete")

_GROUP_FIELDS = "id: g.id, collapsed: g.collapsed, color: g.color, title: g.title, windowId: g.windowId"

SessionFactory = Callable[[], CdpSession]

logger = logging.getLogger(__name__)


class TabGroupsBridgeError(BrowserControlError):
    pass


class TabGroupsActionError(ValueError):
    pass


class TabGroupsClient:
    """扩展 service worker 上的独立 CDP 会话；懒连接，标记失效时透明重连。"""
    def __init__(
        self,
        endpoint: CdpEndpoint,
        *,
        session_factory: SessionFactory | None = None,
        health_timeout_seconds: float = 3.0,
    ) -> None:
        self._endpoint = endpoint
        self._session_factory = session_factory or (lambda: CdpSession(endpoint, reconnect_attempts=1))
        self._health_timeout = health_timeout_seconds
        self._session: CdpSession | None = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> str:
        """在所有 service worker 目标中查找带桥接标记的扩展，返回其目标 ID。"""
        targets = await self._endpoint.list_targets()
        workers = [
            item for item in targets if item.get("type") == "service_worker" and item.get("webSocketDebuggerUrl")
        ]
        if not workers:
            raise TabGroupsBridgeError(
                "no extension service workers found; load the Comet Tab Groups Bridge extension in comet://extensions"
            )
        for worker in workers:
            session = self._session_factory()
            try:
                await session.connect(worker.get("id"))
                if await session.evaluate(f"self.{BRIDGE_MARKER} === true") is True:
                    self._session = session
                    logger.info(
                        "tab groups bridge connected",
                        extra={"event": "tab_groups.connected", "payload_preview": {"target_id": worker.get("id")}},
                    )
                    return str(worker.get("id"))
            except Exception as exc:
                logger.debug(
                    "service worker check failed",
                    extra={"event": "tab_groups.worker.skipped", "op": worker.get("id"), "error": str(exc)},
                )
            await session.close()
        raise TabGroupsBridgeError(
            "Comet Tab Groups Bridge extension not found among service workers; "
            "ensure the extension is loaded in comet://extensions"
        )

    async def disconnect(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def list_groups(self) -> list[dict[str, Any]]:
        return await self._evaluate(
            f"(async () => (await chrome.tabGroups.query({{}})).map(g => ({{{_GROUP_FIELDS}}})))()"
        )

    async def list_tabs(self) -> list[dict[str, Any]]:
        """列出全部标签页；groupId 为 -1 表示未分组。"""
        return await self._evaluate(
            "(async () => (await chrome.tabs.query({})).map(t => ({"
            "id: t.id, groupId: t.groupId, windowId: t.windowId, index: t.index, "
            "title: t.title, url: t.url, active: t.active})))()"
        )

    async def create_group(self, tab_ids: list[int], *, title: str | None = None, color: str | None = None) -> dict[str, Any]:
        props = _props(title=title, color=color)
        return await self._evaluate(
            "(async () => {"
            f"const groupId = await chrome.tabs.group({{tabIds: {json.dumps(tab_ids)}}});"
            f"const props = {json.dumps(props)};"
            "if (Object.keys(props).length > 0) { await chrome.tabGroups.update(groupId, props); }"
            "const g = await chrome.tabGroups.get(groupId);"
            f"return {{groupId: g.id, group: {{{_GROUP_FIELDS}}}}};"
            "})()"
        )

    async def update_group(
        self,
        group_id: int,
        *,
        title: str | None = None,
        color: str | None = None,
        collapsed: bool | None = None,
    ) -> dict[str, Any]:
        props = _props(title=title, color=color, collapsed=collapsed)
        return await self._evaluate(
            "(async () => {"
            f"const g = await chrome.tabGroups.update({int(group_id)}, {json.dumps(props)});"
            f"return {{{_GROUP_FIELDS}}};"
            "})()"
        )

    async def move_group(self, group_id: int, index: int) -> dict[str, Any]:
        return await self._evaluate(
            "(async () => {"
            f"const g = await chrome.tabGroups.move({int(group_id)}, {{index: {int(index)}}});"
            f"return {{{_GROUP_FIELDS}}};"
            "})()"
        )

    async def ungroup_tabs(self, tab_ids: list[int]) -> None:
        await self._evaluate(f"(async () => {{ await chrome.tabs.ungroup({json.dumps(tab_ids)}); }})()")

    async def _evaluate(self, expression: str) -> Any:
        await self._ensure_connected()
        assert self._session is not None
        return await self._session.evaluate(expression)

    async def _ensure_connected(self) -> None:
        if self._session is None:
            await self.connect()
            return
        try:
            alive = await asyncio.wait_for(self._session.evaluate(f"self.{BRIDGE_MARKER}"), timeout=self._health_timeout)
        except Exception:
            alive = False
        if alive is not True:
            await self.disconnect()
            await self.connect()


def _props(**values: Any) -> dict[str, Any]:
    color = values.get("color")
    if color is not None and color not in TAB_GROUP_COLORS:
        raise TabGroupsActionError(f"invalid color: {color}; use one of {', '.join(sorted(TAB_GROUP_COLORS))}")
    return {key: value for key, value in values.items() if value is not None}


def _tab_ids(params: dict[str, Any], action: str) -> list[int]:
    tab_ids = params.get("tabIds") or params.get("tab_ids")
    if not tab_ids:
        raise TabGroupsActionError(f"tabIds required for {action}")
    return [int(item) for item in tab_ids]


def _required_int(params: dict[str, Any], key: str, alias: str, action: str) -> int:
    value = params.get(key, params.get(alias))
    if value is None:
        raise TabGroupsActionError(f"{key} required for {action}")
    return int(value)


async def run_tab_groups_action(client: TabGroupsClient, params: dict[str, Any]) -> dict[str, Any]:
    """按 params["action"] 分发标签页分组操作；参数缺失或动作未知时抛出 TabGroupsActionError。"""
    action = params.get("action")
    if action == "list":
        groups = await client.list_groups()
        return {"action": action, "groups": groups, "count": len(groups)}
    if action == "list_tabs":
        tabs = await client.list_tabs()
        return {"action": action, "tabs": tabs, "count": len(tabs)}
    if action == "create":
        created = await client.create_group(
            _tab_ids(params, action), title=params.get("title"), color=params.get("color")
        )
        return {"action": action, "group_id": created.get("groupId"), "group": created.get("group")}
    if action == "update":
        group = await client.update_group(
            _required_int(params, "groupId", "group_id", action),
            title=params.get("title"),
            color=params.get("color"),
            collapsed=params.get("collapsed"),
        )
        return {"action": action, "group": group}
    if action == "move":
        index = _required_int(params, "index", "index", action)
        group = await client.move_group(_required_int(params, "groupId", "group_id", action), index)
        return {"action": action, "group": group, "index": index}
    if action == "ungroup":
        tab_ids = _tab_ids(params, action)
        await client.ungroup_tabs(tab_ids)
        return {"action": action, "ungrouped": len(tab_ids)}
    if action == "delete":
        # 分组没有删除接口，解散分组内全部标签页即等同删除。
        group_id = _required_int(params, "groupId", "group_id", action)
        member_ids = [tab["id"] for tab in await client.list_tabs() if tab.get("groupId") == group_id]
        if member_ids:
            await client.ungroup_tabs(member_ids)
        return {"action": action, "group_id": group_id, "ungrouped": len(member_ids)}
    raise TabGroupsActionError(f"unknown action: {action}; use one of {', '.join(TAB_GROUP_ACTIONS)}")
