"""日志初始化：JSON 行格式、队列异步落盘、按模块或任务放行 DEBUG，以及敏感字段脱敏。"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from comet_orchestrator.config import Settings
from comet_orchestrator.infra.logging.context import CONTEXT_FIELDS, get_log_context

SERVICE_NAME = "comet-orchestrator"

_listener: QueueListener | None = None

_SENSITIVE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s,;]+"), r"\1***"),
    (re.compile(r"(?i)(cookie\s*[:=]\s*)[^\n;]+"), r"\1***"),
    (re.compile(r"(?i)(password\s*[:=]\s*)[^\s,;]+"), r"\1***"),
    (re.compile(r"(?i)(token\s*[:=]\s*)[^\s,;]+"), r"\1***"),
)
# 截图等 base64 大块数据不落盘。
_BASE64_BLOB = re.compile(r"[A-Za-z0-9+/]{256,}={0,2}")

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "websockets", "asyncio")


def redact_text(value: str | None, mode: str) -> str | None:
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _BASE64_BLOB.sub("<base64 omitted>", text)
    if mode == "strict":
        # strict 模式下页面正文与提示词一并隐去。
        text = re.sub(r'(?i)("(?:text|content|prompt)"\s*:\s*)"[^"]*"', r'\1"***"', text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """将 payload 序列化、脱敏并截断为预览文本。"""
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
        except (TypeError, ValueError):
            serialized = str(payload)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


class DebugRoutingFilter(logging.Filter):
    """低于阈值的记录默认丢弃；指定模块或任务 ID 的 DEBUG 记录放行。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_task_ids: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_modules = debug_modules
        self._debug_task_ids = debug_task_ids

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        name = record.name
        if any(name == item or name.startswith(f"{item}.") for item in self._debug_modules):
            return True
        task_id = getattr(record, "task_id", None) or get_log_context().get("task_id")
        return bool(task_id and task_id in self._debug_task_ids)


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 写入 record，监听线程中无法再读取协程上下文。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    def __init__(self, *, process_role: str, redaction_mode: str, payload_preview_chars: int) -> None:
        super().__init__()
        self._process_role = process_role
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    @staticmethod
    def _number(value: Any) -> int | float | None:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return value
        try:
            return float(str(value))
        except ValueError:
            return None

    def format(self, record: logging.LogRecord) -> str:
        error_text = getattr(record, "error", None)
        if error_text is None and record.exc_info:
            error_text = self.formatException(record.exc_info)

        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "process_role": self._process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
        }
        for key in CONTEXT_FIELDS:
            entry[key] = getattr(record, key, None)
        entry.update(
            {
                "external_service": getattr(record, "external_service", None),
                "op": getattr(record, "op", None),
                "duration_ms": self._number(getattr(record, "duration_ms", None)),
                "status_code": self._number(getattr(record, "status_code", None)),
                "retry": self._number(getattr(record, "retry", None)),
                "message": redact_text(record.getMessage(), self._redaction_mode),
                "error_type": getattr(record, "error_type", None),
                "error": redact_text(str(error_text), self._redaction_mode) if error_text is not None else None,
                "payload_preview": render_payload_preview(
                    getattr(record, "payload_preview", None),
                    max_chars=self._payload_preview_chars,
                    redaction_mode=self._redaction_mode,
                ),
            }
        )
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """初始化全局日志：根 logger 只挂队列处理器，由监听线程写 JSONL 文件与 stderr。"""
    global _listener
    shutdown_logging()

    role_dir = settings.log_dir / process_role
    role_dir.mkdir(parents=True, exist_ok=True)
    log_file = role_dir / "orchestrator.jsonl"

    queue_obj: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {"queue": {"class": "logging.handlers.QueueHandler", "queue": queue_obj}},
            "root": {"level": "DEBUG", "handlers": ["queue"]},
        }
    )
    queue_handler = next((item for item in logging.getLogger().handlers if isinstance(item, QueueHandler)), None)
    if queue_handler is None:
        raise RuntimeError("queue logging handler is not configured")
    queue_handler.addFilter(ContextInjectionFilter())
    queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=getattr(logging, settings.log_level.upper(), logging.INFO),
            debug_modules=set(settings.log_debug_modules_list()),
            debug_task_ids=set(settings.log_debug_task_ids_list()),
        )
    )

    formatter = StructuredJsonFormatter(
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    _listener = QueueListener(queue_obj, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file


def shutdown_logging() -> None:
    """停止队列监听器并关闭底层句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
