"""工具目录：本地提供方的工具清单与远端工具的静态分类表。"""

from __future__ import annotations

from comet_orchestrator.domain.enums import ToolCategory
from comet_orchestrator.domain.models import ToolDescriptor
from comet_orchestrator.domain.providers import LOCAL_PROVIDER, REMOTE_PROVIDER, is_canonical, qualify

REMOTE_TOOL_CATEGORIES: dict[str, ToolCategory] = {
    "comet_connect": ToolCategory.meta,
    "comet_navigate": ToolCategory.dom,
    "comet_click": ToolCategory.dom,
    "comet_type": ToolCategory.dom,
    "comet_screenshot": ToolCategory.monitor,
    "comet_get_content": ToolCategory.dom,
    "comet_evaluate": ToolCategory.dom,
    "comet_list_tabs": ToolCategory.tab,
    "comet_switch_tab": ToolCategory.tab,
    "comet_scroll": ToolCategory.dom,
    "comet_wait": ToolCategory.dom,
    "comet_find_elements": ToolCategory.dom,
}

_LOCAL_TOOL_SPECS: tuple[tuple[str, ToolCategory, str], ...] = (
    ("comet_connect", ToolCategory.meta, "Connect to the Comet browser over CDP"),
    ("comet_ask", ToolCategory.ai, "Send a prompt to Comet AI"),
    ("comet_poll", ToolCategory.ai, "Poll Comet AI for progress or the final answer"),
    ("comet_stop", ToolCategory.ai, "Stop the running Comet AI task"),
    ("comet_screenshot", ToolCategory.monitor, "Capture a screenshot of the current page"),
    ("comet_mode", ToolCategory.ai, "Switch Comet AI search mode"),
    ("comet_tab_groups", ToolCategory.tab, "List, create, update, move, ungroup or delete browser tab groups"),
)


def categorize_remote_tool(name: str) -> ToolCategory:
    return REMOTE_TOOL_CATEGORIES.get(name, ToolCategory.dom)


def local_tool_descriptors() -> list[ToolDescriptor]:
    """返回本地提供方发布的工具清单。"""
    return [
        ToolDescriptor(
            name=name,
            qualified_name=qualify(LOCAL_PROVIDER, name),
            provider_id=LOCAL_PROVIDER,
            category=category,
            description=description,
            is_canonical=is_canonical(name, LOCAL_PROVIDER),
        )
        for name, category, description in _LOCAL_TOOL_SPECS
    ]


def remote_tool_descriptor(raw: dict[str, object]) -> ToolDescriptor:
    """把 tools/list 返回的原始条目转换为工具描述对象。"""
    name = str(raw["name"])
    schema = raw.get("inputSchema")
    return ToolDescriptor(
        name=name,
        qualified_name=qualify(REMOTE_PROVIDER, name),
        provider_id=REMOTE_PROVIDER,
        category=categorize_remote_tool(name),
        schema=dict(schema) if isinstance(schema, dict) else {},
        description=str(raw.get("description") or ""),
        is_canonical=is_canonical(name, REMOTE_PROVIDER),
    )
