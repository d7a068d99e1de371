"""模板参数抽取：基于触发词剥离、复合句拆分与正则的模式匹配，不做语义理解。"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from typing import Any

from comet_orchestrator.domain.models import TaskTemplate

URL_EXTRACT_RE = re.compile(r"https?://\S+", re.IGNORECASE)
SHORTWAVE_PROMPT_RE = re.compile(r"/(analyze|tasks|plan|checklist|clarity|specify)\b", re.IGNORECASE)

COMPOUND_SEPARATORS: tuple[str, ...] = (" then ", " and then ", ", then ", " afterwards ")

RESEARCH_TRIGGER_WORDS: tuple[str, ...] = ("research", "deep dive", "analyze", "look into")
SEARCH_TRIGGER_WORDS: tuple[str, ...] = (
    "search for",
    "search",
    "look up",
    "quick search",
    "what is",
    "find out about",
    "find out",
)
SHORTWAVE_TRIGGER_WORDS: tuple[str, ...] = (
    "shortwave",
    "ask shortwave",
    "email assistant",
    "shortwave query",
    "shortwave triage",
    "email triage",
)

_LEADING_PUNCT_RE = re.compile(r"^\s*[,.:;!?\-]+\s*")
_WHITESPACE_RE = re.compile(r"\s+")


def strip_trigger_words(description: str, triggers: Iterable[str]) -> str:
    """按长度降序、单词边界、忽略大小写剥离触发词，返回剩余载荷文本。"""
    text = description
    for trigger in sorted(triggers, key=len, reverse=True):
        text = re.sub(rf"\b{re.escape(trigger)}\b", "", text, flags=re.IGNORECASE)
    text = _LEADING_PUNCT_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def split_compound(description: str) -> tuple[str, str] | None:
    """按固定分隔符把复合描述拆成 (前半句, 后半句)，分隔符需出现在首字符之后。"""
    lowered = description.lower()
    for separator in COMPOUND_SEPARATORS:
        idx = lowered.find(separator)
        if idx > 0:
            return description[:idx].strip(), description[idx + len(separator):].strip()
    return None


def extract_url(description: str) -> str | None:
    match = URL_EXTRACT_RE.search(description)
    return match.group(0) if match else None


def keyword_overlap(description: str, template: TaskTemplate) -> float:
    """计算描述与模板触发词词表的单词级重合度：命中词数 / 触发词总词数。"""
    desc_words = set(description.lower().split())
    hits = 0
    total = 0
    for pattern in template.trigger_patterns:
        for chunk in pattern.lower().split(".*"):
            for word in chunk.split():
                # URL scheme 正则片段不计入词表。
                if word.startswith("https?"):
                    continue
                total += 1
                if word in desc_words:
                    hits += 1
    return 0.0 if total == 0 else hits / total


def _prompt_params(triggers: tuple[str, ...]) -> Callable[[str, dict[str, Any]], None]:
    def extract(description: str, params: dict[str, Any]) -> None:
        params["prompt"] = strip_trigger_words(description, triggers) or description

    return extract


def _research_extract(description: str, params: dict[str, Any]) -> None:
    parts = split_compound(description)
    if parts is None:
        params["prompt"] = strip_trigger_words(description, RESEARCH_TRIGGER_WORDS) or description
        return
    left, right = parts
    params["prompt"] = strip_trigger_words(left, RESEARCH_TRIGGER_WORDS) or left
    params["extraction_target"] = right


def _navigate(description: str, params: dict[str, Any]) -> None:
    url = extract_url(description)
    if url:
        params["url"] = url


def _navigate_extract(description: str, params: dict[str, Any]) -> None:
    _navigate(description, params)
    parts = split_compound(description)
    if parts is not None:
        params["extraction_target"] = parts[1]


def _shortwave_query(description: str, params: dict[str, Any]) -> None:
    params["query"] = strip_trigger_words(description, SHORTWAVE_TRIGGER_WORDS) or description


def _shortwave_triage(description: str, params: dict[str, Any]) -> None:
    params["query"] = "/analyze"


def _shortwave_saved_prompt(description: str, params: dict[str, Any]) -> None:
    match = SHORTWAVE_PROMPT_RE.search(description)
    params["prompt_command"] = f"/{match.group(1).lower()}" if match else "/analyze"


def _dom_interact(description: str, params: dict[str, Any]) -> None:
    lowered = description.lower()
    if "click" in lowered:
        params["action"] = "click"
    elif "type" in lowered or "fill" in lowered:
        params["action"] = "type"
    elif "scroll" in lowered:
        params["action"] = "scroll"
    elif "submit" in lowered:
        params["action"] = "click"
    params["target"] = description


_EXTRACTORS: dict[str, Callable[[str, dict[str, Any]], None]] = {
    "research": _prompt_params(RESEARCH_TRIGGER_WORDS),
    "search": _prompt_params(SEARCH_TRIGGER_WORDS),
    "research-extract": _research_extract,
    "navigate": _navigate,
    "navigate-extract": _navigate_extract,
    "shortwave-query": _shortwave_query,
    "shortwave-triage": _shortwave_triage,
    "shortwave-saved-prompt": _shortwave_saved_prompt,
    "dom-interact": _dom_interact,
}


def extract_params_for_template(description: str, template: TaskTemplate) -> dict[str, Any]:
    """以模板默认参数为底，叠加按模板名抽取到的参数；未知模板只返回默认参数。"""
    params: dict[str, Any] = dict(template.default_params)
    extractor = _EXTRACTORS.get(template.name)
    if extractor is not None:
        extractor(description, params)
    return params
