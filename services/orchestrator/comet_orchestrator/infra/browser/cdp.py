"""CDP 浏览器控制面：HTTP 端点（目标列表/新建/关闭）与单目标 WebSocket 会话（执行表达式/导航/截图）。"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from comet_orchestrator.infra.retry import retry_async

logger = logging.getLogger(__name__)


class BrowserControlError(RuntimeError):
    pass


class BrowserNotConnectedError(BrowserControlError):
    pass


class EvaluationError(BrowserControlError):
    pass


class TransportClosedError(BrowserControlError):
    pass


class CdpEndpoint:
    """CDP HTTP 端点的异步封装。"""
    def __init__(self, base_url: str, timeout_seconds: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, op: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """发送请求并记录结构化日志，HTTP 错误状态统一抛出。"""
        started = time.perf_counter()
        try:
            response = await self._client.request(method, path, params=params)
            response.raise_for_status()
        except Exception as exc:
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError):
                status_code = exc.response.status_code
            logger.debug(
                "cdp request failed",
                extra={
                    "event": "cdp.request.failed",
                    "external_service": "cdp",
                    "op": op,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise
        return response

    async def version(self) -> dict[str, Any]:
        response = await self._request("GET", "/json/version", op="json.version")
        return response.json()

    async def list_targets(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "/json/list", op="json.list")
        return list(response.json())

    async def new_target(self, url: str) -> dict[str, Any]:
        # 新版 Chromium 仅接受 PUT 方式新建目标。
        response = await self._request("PUT", f"/json/new?{url}", op="json.new")
        return response.json()

    async def close_target(self, target_id: str) -> None:
        await self._request("GET", f"/json/close/{target_id}", op="json.close")


class CdpSession:
    """单目标 DevTools WebSocket 会话；命令串行发送，传输断开时自动重连重试。"""
    def __init__(
        self,
        endpoint: CdpEndpoint,
        *,
        command_timeout_seconds: float = 30.0,
        reconnect_attempts: int = 2,
    ) -> None:
        self._endpoint = endpoint
        self._command_timeout = command_timeout_seconds
        self._reconnect_attempts = reconnect_attempts
        self._ws: Any = None
        self._target: dict[str, Any] | None = None
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def target(self) -> dict[str, Any] | None:
        return self._target

    async def connect(self, target_id: str | None = None) -> dict[str, Any]:
        """连接指定目标；未指定时选择第一个 page 目标。"""
        await self.close()
        try:
            targets = await self._endpoint.list_targets()
        except httpx.HTTPError as exc:
            raise BrowserNotConnectedError(f"CDP endpoint unreachable at {self._endpoint.base_url}: {exc}") from exc
        candidates = [
            item
            for item in targets
            if item.get("webSocketDebuggerUrl")
            and (item.get("id") == target_id if target_id else item.get("type") == "page")
        ]
        if not candidates:
            raise BrowserNotConnectedError(f"no debuggable target found (target_id={target_id})")
        target = candidates[0]
        try:
            self._ws = await websockets.connect(target["webSocketDebuggerUrl"], max_size=None)
        except (OSError, InvalidHandshake) as exc:
            raise BrowserNotConnectedError(f"failed to open DevTools socket: {exc}") from exc
        self._target = target
        logger.info(
            "cdp session connected",
            extra={"event": "cdp.session.connected", "payload_preview": {"target_id": target.get("id")}},
        )
        return target

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def evaluate(self, expression: str) -> Any:
        """执行表达式并按值返回结果；页面内抛出的异常转换为 EvaluationError。"""
        result = await self.command(
            "Runtime.evaluate",
            {"expression": expression, "awaitPromise": True, "returnByValue": True},
        )
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            raise EvaluationError(str(exception.get("description") or details.get("text") or "evaluation failed"))
        return (result.get("result") or {}).get("value")

    async def navigate(self, url: str) -> dict[str, Any]:
        result = await self.command("Page.navigate", {"url": url})
        if result.get("errorText"):
            raise BrowserControlError(f"navigation failed: {result['errorText']}")
        return result

    async def screenshot(self, image_format: str = "png") -> str:
        """返回 base64 编码的页面截图。"""
        result = await self.command("Page.captureScreenshot", {"format": image_format})
        return str(result.get("data", ""))

    async def command(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """发送 CDP 命令；传输关闭时重连当前目标后按指数退避重试。"""
        if self._ws is None:
            raise BrowserNotConnectedError("CDP session is not connected")

        async def reconnect(_exc: BaseException, _attempt: int) -> None:
            target_id = self._target.get("id") if self._target else None
            await self.connect(target_id)

        return await retry_async(
            lambda: self._send_command(method, params or {}),
            attempts=self._reconnect_attempts,
            base_delay=0.2,
            should_retry=lambda exc: isinstance(exc, TransportClosedError),
            on_retry=reconnect,
            op=f"cdp.{method}",
        )

    async def _send_command(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise BrowserNotConnectedError("CDP session is not connected")
        async with self._lock:
            command_id = next(self._ids)
            try:
                await ws.send(json.dumps({"id": command_id, "method": method, "params": params}))
                return await asyncio.wait_for(self._await_reply(ws, command_id), timeout=self._command_timeout)
            except ConnectionClosed as exc:
                self._ws = None
                raise TransportClosedError(f"DevTools socket closed during {method}: {exc}") from exc

    @staticmethod
    async def _await_reply(ws: Any, command_id: int) -> dict[str, Any]:
        while True:
            raw = await ws.recv()
            try:
                message = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                continue
            # 事件帧没有 id，直接跳过。
            if message.get("id") != command_id:
                continue
            if "error" in message:
                error = message["error"]
                raise BrowserControlError(str(error.get("message") if isinstance(error, dict) else error))
            return message.get("result") or {}
