"""日志上下文：基于 contextvars 透传 request/task/target 标识，执行器协程内自动带出任务字段。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Iterator

CONTEXT_FIELDS: tuple[str, ...] = ("request_id", "task_id", "target_id")

_UNSET = object()

_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"log_{name}", default=None) for name in CONTEXT_FIELDS
}


def get_log_context() -> dict[str, str | None]:
    return {name: var.get() for name, var in _vars.items()}


@contextmanager
def bind_log_context(
    *,
    request_id: str | None | object = _UNSET,
    task_id: str | None | object = _UNSET,
    target_id: str | None | object = _UNSET,
) -> Iterator[None]:
    """在上下文范围内绑定日志字段，退出时按相反顺序恢复。"""
    values = {"request_id": request_id, "task_id": task_id, "target_id": target_id}
    tokens: list[tuple[ContextVar[Any], Token[Any]]] = []
    for name, value in values.items():
        if value is _UNSET:
            continue
        var = _vars[name]
        tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
