"""任务模板注册中心：管理模板注册、精确查询与按注册顺序的首个命中匹配。"""

from __future__ import annotations

import re

from comet_orchestrator.domain.models import TaskTemplate
from comet_orchestrator.domain.templates.builtin import build_builtin_templates

URL_SCHEME_FRAGMENT = "https?://"
_URL_RE = re.compile(r"https?://", re.IGNORECASE)


class TemplateAlreadyRegisteredError(ValueError):
    pass


def is_regex_pattern(pattern: str) -> bool:
    """仅含 URL scheme 片段的触发词按正则处理，其余一律按大小写不敏感的子串处理。"""
    return URL_SCHEME_FRAGMENT in pattern


class TaskTemplateRegistry:
    """任务模板注册中心，注册顺序即匹配优先级。"""
    def __init__(self, *, include_builtins: bool = True) -> None:
        self._templates: dict[str, TaskTemplate] = {}
        self._patterns: dict[str, re.Pattern[str]] = {}
        if include_builtins:
            for template in build_builtin_templates():
                self.register(template)

    def register(self, template: TaskTemplate) -> None:
        """注册模板；同名模板重复注册视为错误。"""
        if template.name in self._templates:
            raise TemplateAlreadyRegisteredError(f'template "{template.name}" is already registered')
        for pattern in template.trigger_patterns:
            if is_regex_pattern(pattern) and pattern not in self._patterns:
                self._patterns[pattern] = re.compile(pattern, re.IGNORECASE)
        # dict 保持插入顺序，直接作为匹配优先级。
        self._templates[template.name] = template

    def get(self, name: str) -> TaskTemplate | None:
        return self._templates.get(name)

    def get_all(self) -> list[TaskTemplate]:
        """返回按注册顺序排列的模板快照。"""
        return list(self._templates.values())

    def match(self, description: str) -> TaskTemplate | None:
        """按注册顺序返回第一个命中的模板；均未命中时返回 None。"""
        lowered = description.lower()
        has_url = bool(_URL_RE.search(description))
        for template in self._templates.values():
            if self._matches(template, lowered, has_url):
                return template
        return None

    def _matches(self, template: TaskTemplate, lowered: str, has_url: bool) -> bool:
        if template.requires_url:
            if not has_url:
                return False
            if template.required_keywords:
                return any(keyword in lowered for keyword in template.required_keywords)
            return True

        for pattern in template.trigger_patterns:
            if is_regex_pattern(pattern):
                if self._patterns[pattern].search(lowered):
                    return True
            elif pattern.lower() in lowered:
                return True
        return False
