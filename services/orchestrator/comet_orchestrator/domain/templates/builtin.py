"""内置任务模板：注册顺序即匹配优先级，更具体的模板必须排在更宽泛的模板之前。"""

from __future__ import annotations

from typing import Any

from comet_orchestrator.domain.models import TaskTemplate, TaskTemplateStep
from comet_orchestrator.domain.providers import LOCAL_PROVIDER, REMOTE_PROVIDER

SHORTWAVE_URL = "https://app.shortwave.com/"
EXTRACTION_VERBS: tuple[str, ...] = ("extract", "scrape", "get content", "pull data")


def _step(
    tool_name: str,
    provider_id: str,
    description: str,
    param_template: dict[str, Any] | None = None,
    optional: bool = False,
) -> TaskTemplateStep:
    return TaskTemplateStep(
        tool_name=tool_name,
        provider_id=provider_id,
        description=description,
        param_template=dict(param_template or {}),
        optional=optional,
    )


def _shortwave_prelude() -> tuple[TaskTemplateStep, ...]:
    """Shortwave 系列模板共享的前置步骤：连接、打开页面、尝试切换 Advanced 模式。"""
    return (
        _step("comet_connect", LOCAL_PROVIDER, "Ensure Comet connection"),
        _step("comet_navigate", REMOTE_PROVIDER, "Open Shortwave", {"url": SHORTWAVE_URL}),
        _step("comet_find_elements", REMOTE_PROVIDER, "Find mode selector", optional=True),
        _step("comet_click", REMOTE_PROVIDER, "Set Advanced mode", optional=True),
    )


def _research_steps(mode: str, query_label: str) -> tuple[TaskTemplateStep, ...]:
    return (
        _step("comet_connect", LOCAL_PROVIDER, "Ensure Comet connection"),
        _step("comet_mode", LOCAL_PROVIDER, f"Set Comet to {mode} mode", {"mode": mode}),
        _step("comet_ask", LOCAL_PROVIDER, f"Submit {query_label} query"),
        _step("comet_poll", LOCAL_PROVIDER, f"Wait for {query_label} completion"),
    )


def build_builtin_templates() -> list[TaskTemplate]:
    """构建内置模板列表（按优先级排序）。"""
    return [
        TaskTemplate(
            name="research-extract",
            description="Deep research then extract content from result page",
            trigger_patterns=(
                "research.*then extract",
                "research.*then get",
                "research.*citations",
                "research.*pull from result",
                "deep dive.*then extract",
                "deep dive.*then get",
                "analyze.*then extract",
                "analyze.*then get",
            ),
            steps=_research_steps("research", "research")
            + (_step("comet_get_content", REMOTE_PROVIDER, "Extract content from result page"),),
        ),
        TaskTemplate(
            name="research",
            description="Deep research using Comet AI",
            trigger_patterns=("research", "deep dive", "analyze"),
            steps=_research_steps("research", "research"),
        ),
        TaskTemplate(
            name="search",
            description="Quick search using Comet AI",
            trigger_patterns=("search", "look up", "quick search", "what is", "find out"),
            steps=_research_steps("search", "search"),
        ),
        TaskTemplate(
            name="navigate-extract",
            description="Navigate to URL and extract page content",
            trigger_patterns=(
                "extract.*https?://",
                "scrape.*https?://",
                "get content.*https?://",
                "pull data.*https?://",
                "https?://.*extract",
                "https?://.*scrape",
                "https?://.*get content",
                "https?://.*pull data",
            ),
            steps=(
                _step("comet_navigate", REMOTE_PROVIDER, "Navigate to URL"),
                _step("comet_get_content", REMOTE_PROVIDER, "Extract page content"),
            ),
            requires_url=True,
            required_keywords=EXTRACTION_VERBS,
        ),
        TaskTemplate(
            name="navigate",
            description="Navigate browser to a URL",
            trigger_patterns=("go to", "open", "navigate to"),
            steps=(_step("comet_navigate", REMOTE_PROVIDER, "Navigate to URL"),),
            requires_url=True,
        ),
        TaskTemplate(
            name="shortwave-saved-prompt",
            description="Run a Shortwave saved prompt command",
            trigger_patterns=(
                "shortwave /analyze",
                "shortwave /tasks",
                "shortwave /plan",
                "shortwave /checklist",
                "shortwave /clarity",
                "shortwave /specify",
            ),
            default_params={"mode": "Advanced"},
            steps=_shortwave_prelude()
            + (
                _step("comet_type", REMOTE_PROVIDER, "Enter saved prompt command"),
                _step("comet_wait", REMOTE_PROVIDER, "Wait for response"),
                _step("comet_get_content", REMOTE_PROVIDER, "Extract response"),
            ),
        ),
        TaskTemplate(
            name="shortwave-triage",
            description="Triage emails via Shortwave AI assistant",
            trigger_patterns=(
                "shortwave triage",
                "email triage shortwave",
                "batch listen email",
                "shortwave email triage",
            ),
            default_params={"mode": "Advanced"},
            steps=_shortwave_prelude()
            + (
                _step("comet_click", REMOTE_PROVIDER, "Focus query input"),
                _step("comet_type", REMOTE_PROVIDER, "Enter /analyze triage prompt"),
                _step("comet_wait", REMOTE_PROVIDER, "Wait for triage response"),
                _step("comet_get_content", REMOTE_PROVIDER, "Extract triage results"),
            ),
        ),
        TaskTemplate(
            name="shortwave-query",
            description="Ask Shortwave AI email assistant a question",
            trigger_patterns=("shortwave", "ask shortwave", "email assistant", "shortwave query"),
            default_params={"mode": "Advanced"},
            steps=_shortwave_prelude()
            + (
                _step("comet_click", REMOTE_PROVIDER, "Focus query input"),
                _step("comet_type", REMOTE_PROVIDER, "Enter query"),
                _step("comet_wait", REMOTE_PROVIDER, "Wait for response"),
                _step("comet_get_content", REMOTE_PROVIDER, "Extract response"),
            ),
        ),
        TaskTemplate(
            name="dom-interact",
            description="Interact with page DOM elements (click, type, scroll, etc.)",
            trigger_patterns=("click", "type", "fill", "scroll", "submit", "form"),
            steps=(
                _step("comet_find_elements", REMOTE_PROVIDER, "Find target element"),
                _step("comet_click", REMOTE_PROVIDER, "Perform DOM interaction"),
            ),
        ),
        TaskTemplate(
            name="screenshot",
            description="Capture a screenshot of the current page",
            trigger_patterns=("screenshot", "capture", "take picture"),
            steps=(_step("comet_screenshot", LOCAL_PROVIDER, "Take screenshot"),),
        ),
    ]
