"""工具提供方常量：提供方 ID、别名映射与同名工具冲突裁决表。"""

from __future__ import annotations

LOCAL_PROVIDER = "comet-mcp"
REMOTE_PROVIDER = "comet-browser"

PROVIDER_TO_ALIAS: dict[str, str] = {
    LOCAL_PROVIDER: "mcp",
    REMOTE_PROVIDER: "browser",
}
ALIAS_TO_PROVIDER: dict[str, str] = {alias: provider for provider, alias in PROVIDER_TO_ALIAS.items()}

QUALIFIED_NAME_SEPARATOR = ":"

# 同名工具由哪个提供方胜出，构建期静态决定。
TOOL_COLLISIONS: dict[str, str] = {
    "comet_connect": LOCAL_PROVIDER,
    "comet_screenshot": LOCAL_PROVIDER,
}

# 依赖扩展 service worker 的工具，执行前需要先确认扩展处于唤醒状态。
DORMANCY_GUARDED_TOOLS: frozenset[str] = frozenset({"comet_tab_groups", "comet_group_tabs", "comet_ungroup_tabs"})


def qualify(provider_id: str, tool_name: str) -> str:
    """拼接 `<alias>:<name>` 形式的限定名。"""
    return f"{PROVIDER_TO_ALIAS.get(provider_id, provider_id)}{QUALIFIED_NAME_SEPARATOR}{tool_name}"


def is_canonical(tool_name: str, provider_id: str) -> bool:
    """不在冲突表中的工具一律视为规范工具；冲突工具仅胜出方为规范工具。"""
    winner = TOOL_COLLISIONS.get(tool_name)
    return winner is None or winner == provider_id


def requires_wake(tool_name: str) -> bool:
    return tool_name in DORMANCY_GUARDED_TOOLS
