"""通用重试组合子：按错误分类器决定是否重试，指数退避，并在重试间隙执行重连回调。"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    should_retry: Callable[[BaseException], bool] = lambda _exc: True,
    on_retry: Callable[[BaseException, int], Awaitable[None]] | None = None,
    op: str = "operation",
) -> T:
    """执行 operation，最多 attempts 次；不可重试错误或最后一次失败直接抛出。"""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "operation failed, retrying",
                extra={
                    "event": "retry.scheduled",
                    "op": op,
                    "retry": attempt,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            await asyncio.sleep(delay)
            if on_retry is not None:
                await on_retry(exc, attempt)
    raise AssertionError("unreachable")
