"""工具路由器：合并本地与远端工具清单为统一目录，按限定名或规范名解析并分发调用。"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from comet_orchestrator.domain.enums import ToolCategory
from comet_orchestrator.domain.models import ToolDescriptor, ToolResult
from comet_orchestrator.domain.providers import (
    ALIAS_TO_PROVIDER,
    LOCAL_PROVIDER,
    QUALIFIED_NAME_SEPARATOR,
    is_canonical,
    qualify,
)

DEFAULT_AVAILABILITY_TIMEOUT_SECONDS = 3.0

logger = logging.getLogger(__name__)


class ToolBridge(Protocol):
    """进程外工具提供方需要实现的最小接口。"""

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, params: dict[str, Any]) -> ToolResult: ...


class ToolRouter:
    """工具路由器；本地提供方的工具只登记在目录中，执行由宿主负责。"""
    def __init__(
        self,
        local_tools: list[ToolDescriptor],
        bridges: dict[str, ToolBridge],
        *,
        availability_timeout_seconds: float = DEFAULT_AVAILABILITY_TIMEOUT_SECONDS,
    ) -> None:
        self._local_tools = list(local_tools)
        self._bridges = dict(bridges)
        self._availability_timeout = availability_timeout_seconds
        self._inventory: list[ToolDescriptor] = self._normalize(self._local_tools)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """拉取各远端提供方的工具清单并整体替换目录；失败时只保留本地工具，不向上抛出。"""
        tools = list(self._local_tools)
        failures: list[str] = []
        for provider_id, bridge in self._bridges.items():
            started = time.perf_counter()
            try:
                remote = await bridge.list_tools()
            except Exception as exc:
                failures.append(provider_id)
                logger.warning(
                    "tool provider inventory unavailable",
                    extra={
                        "event": "tool_router.init.failed",
                        "external_service": provider_id,
                        "op": "tools/list",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                continue
            tools.extend(replace_provider(item, provider_id) for item in remote)

        self._inventory = self._normalize(tools)
        self._initialized = not failures
        logger.info(
            "tool router initialized",
            extra={
                "event": "tool_router.init.completed",
                "payload_preview": {"tools": len(self._inventory), "failed_providers": failures},
            },
        )

    def get_inventory(self) -> list[ToolDescriptor]:
        return list(self._inventory)

    def find_tool(self, name: str) -> ToolDescriptor | None:
        """限定名精确解析到指定提供方；裸名优先返回规范工具，否则返回第一个同名工具。"""
        if QUALIFIED_NAME_SEPARATOR in name:
            alias, tool_name = name.split(QUALIFIED_NAME_SEPARATOR, 1)
            provider_id = ALIAS_TO_PROVIDER.get(alias)
            if provider_id is None:
                return None
            return next(
                (tool for tool in self._inventory if tool.provider_id == provider_id and tool.name == tool_name),
                None,
            )

        matches = [tool for tool in self._inventory if tool.name == name]
        if not matches:
            return None
        return next((tool for tool in matches if tool.is_canonical), matches[0])

    def find_tools_by_category(self, category: ToolCategory) -> list[ToolDescriptor]:
        return [tool for tool in self._inventory if tool.category == category]

    async def invoke(self, name: str, params: dict[str, Any]) -> ToolResult:
        """调用进程外工具；本地提供方的工具在这里被拒绝，需由调用方自行执行。"""
        tool = self.find_tool(name)
        if tool is None:
            return ToolResult(tool_name=name, provider_id="", success=False, error=f"tool not found: {name}")
        bridge = self._bridges.get(tool.provider_id)
        if bridge is None:
            return ToolResult(
                tool_name=tool.name,
                provider_id=tool.provider_id,
                success=False,
                error=f"tool {tool.qualified_name} is local to the host process and must be executed by the caller",
            )
        return await bridge.call_tool(tool.name, params)

    async def is_server_available(self, provider_id: str) -> bool:
        """本地提供方恒可用；远端提供方以短超时的工具清单探测为准。"""
        if provider_id == LOCAL_PROVIDER:
            return True
        bridge = self._bridges.get(provider_id)
        if bridge is None:
            return False
        try:
            await asyncio.wait_for(bridge.list_tools(), timeout=self._availability_timeout)
        except Exception:
            return False
        return True

    @staticmethod
    def _normalize(tools: list[ToolDescriptor]) -> list[ToolDescriptor]:
        return [
            ToolDescriptor(
                name=tool.name,
                qualified_name=qualify(tool.provider_id, tool.name),
                provider_id=tool.provider_id,
                category=tool.category,
                schema=tool.schema,
                description=tool.description,
                is_canonical=is_canonical(tool.name, tool.provider_id),
            )
            for tool in tools
        ]


def replace_provider(tool: ToolDescriptor, provider_id: str) -> ToolDescriptor:
    """以桥接器登记的提供方 ID 为准，避免远端自报的 ID 与路由表不一致。"""
    if tool.provider_id == provider_id:
        return tool
    return ToolDescriptor(
        name=tool.name,
        qualified_name=qualify(provider_id, tool.name),
        provider_id=provider_id,
        category=tool.category,
        schema=tool.schema,
        description=tool.description,
        is_canonical=tool.is_canonical,
    )
