"""Comet AI 助手：在当前页面上输入提示词、读取代理进度、停止任务与切换搜索模式。"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any

from comet_orchestrator.infra.browser.cdp import BrowserControlError, CdpSession

ASSISTANT_HOME_URL = "https://www.perplexity.ai/"
ASSISTANT_HOST = "perplexity.ai"
SEARCH_MODES: dict[str, str] = {"search": "Search", "research": "Research", "labs": "Labs", "learn": "Learn"}
RESPONSE_LIMIT = 8_000

_INPUT_SELECTORS = (
    '[contenteditable="true"]',
    'textarea[placeholder*="Ask"]',
    'textarea[placeholder*="Search"]',
    "textarea",
    'input[type="text"]',
)

_PROSE_STATE_JS = """
(() => {
  const els = document.querySelectorAll('[class*="prose"]');
  const last = els[els.length - 1];
  return {count: els.length, lastText: last ? last.innerText.substring(0, 100) : ''};
})()
"""

_HAS_INPUT_TEXT_JS = """
(() => {
  const el = document.querySelector('[contenteditable="true"]');
  if (el && el.innerText.trim().length > 0) return true;
  const textarea = document.querySelector('textarea');
  return !!(textarea && textarea.value.trim().length > 0);
})()
"""

_STATUS_JS = r"""
(() => {
  const body = document.body.innerText;
  let hasStop = false;
  for (const btn of document.querySelectorAll('button')) {
    const label = (btn.getAttribute('aria-label') || '').toLowerCase();
    if ((btn.querySelector('rect') || label.includes('stop')) && btn.offsetParent !== null && !btn.disabled) {
      hasStop = true;
      break;
    }
  }
  const spinner = document.querySelector('[class*="animate-spin"], [class*="animate-pulse"]') !== null;
  const stepsDone = /\d+ steps? completed/i.test(body);
  const finished = body.includes('Finished') && !hasStop;
  const reviewed = /Reviewed \d+ sources?/i.test(body);
  const followUp = body.includes('Ask a follow-up');
  const prose = [...document.querySelectorAll('[class*="prose"]')].some(el => el.innerText.trim().length > 0);
  const working = ['Working', 'Searching', 'Reviewing sources', 'Preparing to assist', 'Clicking',
                   'Typing:', 'Navigating to', 'Reading', 'Analyzing'].some(p => body.includes(p));
  let status = 'idle';
  if (hasStop || spinner) status = 'working';
  else if (stepsDone || finished) status = 'completed';
  else if (reviewed && !working) status = 'completed';
  else if (working) status = 'working';
  else if (followUp && prose) status = 'completed';
  const steps = [];
  for (const pattern of [/Preparing to assist[^\n]*/g, /Clicking[^\n]*/g, /Typing:[^\n]*/g, /Navigating[^\n]*/g,
                         /Reading[^\n]*/g, /Searching[^\n]*/g, /Found[^\n]*/g]) {
    const found = body.match(pattern);
    if (found) steps.push(...found.map(s => s.trim().substring(0, 100)));
  }
  let response = '';
  if (status === 'completed') {
    const main = document.querySelector('main') || document.body;
    const texts = [];
    for (const el of main.querySelectorAll('[class*="prose"]')) {
      if (el.closest('nav, aside, header, footer, form')) continue;
      const text = el.innerText.trim();
      if (['Library', 'Discover', 'Spaces', 'Finance', 'Account', 'Upgrade', 'Home', 'Search',
           'Ask a follow-up'].some(ui => text.startsWith(ui))) continue;
      if (text.endsWith('?') && text.length < 100) continue;
      if (text.length > 5) texts.push(text);
    }
    if (texts.length > 0) response = texts[texts.length - 1];
  }
  return {status, steps: [...new Set(steps)].slice(-5), hasStopButton: hasStop, response};
})()
"""

_STOP_JS = """
(() => {
  for (const btn of document.querySelectorAll('button[aria-label*="Stop"], button[aria-label*="Cancel"]')) {
    btn.click();
    return true;
  }
  for (const btn of document.querySelectorAll('button')) {
    if (btn.querySelector('svg rect')) { btn.click(); return true; }
  }
  return false;
})()
"""

_CURRENT_MODE_JS = """
(() => {
  for (const mode of ['Search', 'Research', 'Labs', 'Learn']) {
    const btn = document.querySelector('button[aria-label="' + mode + '"]');
    if (btn && btn.getAttribute('data-state') === 'checked') return mode.toLowerCase();
  }
  return 'search';
})()
"""

logger = logging.getLogger(__name__)


class AssistantError(BrowserControlError):
    pass


def normalize_prompt(prompt: str) -> str:
    """去掉列表符号并把换行与连续空白折叠为单个空格。"""
    text = re.sub(r"^[-*•]\s*", "", prompt, flags=re.MULTILINE)
    return re.sub(r"\s+", " ", text).strip()


def clean_response(text: str) -> str:
    text = re.sub(r"View All|Show more|Ask a follow-up|\d+ sources?", "", text, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", text).strip()[:RESPONSE_LIMIT]


class CometAssistant:
    """基于共享 CDP 会话驱动 Comet 内置 AI 页面。"""
    def __init__(
        self,
        session: CdpSession,
        *,
        poll_interval_seconds: float = 2.0,
        settle_seconds: float = 0.5,
    ) -> None:
        self._session = session
        self._poll_interval = poll_interval_seconds
        self._settle = settle_seconds

    async def ask(self, params: dict[str, Any]) -> dict[str, Any]:
        """发送提示词并在 timeout 毫秒内等待新回答；超时返回进行中状态，需继续 comet_poll。"""
        prompt = normalize_prompt(str(params.get("prompt") or ""))
        if not prompt:
            raise AssistantError("prompt cannot be empty")
        timeout_seconds = float(params.get("timeout") or 15_000) / 1000
        await self._ensure_assistant_page()

        before = await self._session.evaluate(_PROSE_STATE_JS) or {}
        await self._type_prompt(prompt)
        await self._submit()

        deadline = time.monotonic() + timeout_seconds
        collected: list[str] = []
        saw_new = False
        while time.monotonic() < deadline:
            await asyncio.sleep(self._poll_interval)
            current = await self._session.evaluate(_PROSE_STATE_JS) or {}
            if not saw_new and (
                current.get("count", 0) > before.get("count", 0)
                or (current.get("lastText") and current.get("lastText") != before.get("lastText"))
            ):
                saw_new = True
            status = await self.status()
            for step in status["steps"]:
                if step not in collected:
                    collected.append(step)
            if status["status"] == "completed" and saw_new:
                return {"status": "completed", "response": status["response"], "steps": collected}

        status = await self.status()
        logger.info(
            "assistant still working after initial wait",
            extra={"event": "assistant.ask.pending", "payload_preview": {"steps": len(collected)}},
        )
        return {"status": status["status"], "response": status["response"], "steps": collected, "pending": True}

    async def poll(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self.status()

    async def stop(self, params: dict[str, Any]) -> dict[str, Any]:
        stopped = await self._session.evaluate(_STOP_JS) is True
        return {"stopped": stopped}

    async def mode(self, params: dict[str, Any]) -> dict[str, Any]:
        """未给出 mode 时返回当前模式；否则切换到指定模式。"""
        await self._ensure_connected()
        requested = params.get("mode")
        if not requested:
            current = await self._session.evaluate(_CURRENT_MODE_JS)
            return {"mode": current, "available": sorted(SEARCH_MODES)}
        label = SEARCH_MODES.get(str(requested))
        if label is None:
            raise AssistantError(f"invalid mode: {requested}; use one of {', '.join(SEARCH_MODES)}")
        await self._ensure_assistant_page()
        selector = json.dumps(f'button[aria-label="{label}"]')
        clicked = await self._session.evaluate(
            "(() => {"
            f"const btn = document.querySelector({selector});"
            "if (btn) { btn.click(); return true; }"
            "return false;"
            "})()"
        )
        if clicked is not True:
            raise AssistantError(f"mode selector for {requested} not found")
        return {"mode": requested, "switched": True}

    async def status(self) -> dict[str, Any]:
        await self._ensure_connected()
        raw = await self._session.evaluate(_STATUS_JS) or {}
        steps = list(raw.get("steps") or [])
        return {
            "status": raw.get("status", "idle"),
            "steps": steps,
            "current_step": steps[-1] if steps else "",
            "response": clean_response(str(raw.get("response") or "")),
            "has_stop_button": bool(raw.get("hasStopButton")),
        }

    async def _ensure_connected(self) -> None:
        if not self._session.connected:
            await self._session.connect()

    async def _ensure_assistant_page(self) -> None:
        await self._ensure_connected()
        href = await self._session.evaluate("window.location.href")
        if ASSISTANT_HOST not in str(href or ""):
            await self._session.navigate(ASSISTANT_HOME_URL)
            await asyncio.sleep(self._settle * 4)

    async def _type_prompt(self, prompt: str) -> None:
        for selector in _INPUT_SELECTORS:
            if await self._session.evaluate(f"document.querySelector({json.dumps(selector)}) !== null") is True:
                break
        else:
            raise AssistantError("could not find input element; navigate to the assistant page first")
        literal = json.dumps(prompt)
        typed = await self._session.evaluate(
            "(() => {"
            "const el = document.querySelector('[contenteditable=\"true\"]');"
            "if (el) { el.focus(); document.execCommand('selectAll', false, null);"
            f"document.execCommand('insertText', false, {literal}); return true; }}"
            "const textarea = document.querySelector('textarea');"
            f"if (textarea) {{ textarea.focus(); textarea.value = {literal};"
            "textarea.dispatchEvent(new Event('input', {bubbles: true})); return true; }"
            "return false;"
            "})()"
        )
        if typed is not True:
            raise AssistantError("failed to type into input element")

    async def _submit(self) -> None:
        await asyncio.sleep(self._settle)
        if await self._session.evaluate(_HAS_INPUT_TEXT_JS) is not True:
            raise AssistantError("prompt text not found in input after typing")
        for event_type in ("keyDown", "keyUp"):
            await self._session.command(
                "Input.dispatchKeyEvent",
                {"type": event_type, "key": "Enter", "code": "Enter", "windowsVirtualKeyCode": 13},
            )
        await asyncio.sleep(self._settle)
