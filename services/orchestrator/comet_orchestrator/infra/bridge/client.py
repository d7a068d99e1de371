"""远端工具桥：通过子进程 stdin/stdout 上的行分隔 JSON-RPC 调用外部工具服务。"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any

from comet_orchestrator.domain.models import ToolDescriptor, ToolResult
from comet_orchestrator.domain.providers import REMOTE_PROVIDER
from comet_orchestrator.infra.retry import retry_async
from comet_orchestrator.infra.tools.catalog import remote_tool_descriptor

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "comet-orchestrator-bridge", "version": "1.0.0"}
STDERR_BUFFER_LINES = 50
# 截图等结果以 base64 单行返回，默认 64KB 的行缓冲不够用。
STREAM_LIMIT_BYTES = 16 * 1024 * 1024

logger = logging.getLogger(__name__)


class BridgeError(RuntimeError):
    pass


class BridgeUnavailableError(BridgeError):
    pass


class BridgeTimeoutError(BridgeError):
    pass


class BridgeClosedError(BridgeError):
    pass


class RemoteToolBridge:
    """长驻子进程 JSON-RPC 客户端，支持有限次数自动重启与工具清单缓存。"""
    def __init__(
        self,
        *,
        server_path: Path,
        python_path: str = "python3",
        call_timeout_seconds: float = 30.0,
        max_restarts: int = 3,
        restart_delay_seconds: float = 1.0,
        stop_timeout_seconds: float = 3.0,
    ) -> None:
        self._server_path = Path(server_path)
        self._python_path = python_path
        self._call_timeout = call_timeout_seconds
        self._max_restarts = max_restarts
        self._restart_delay = restart_delay_seconds
        self._stop_timeout = stop_timeout_seconds

        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task[None]] = []
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._start_lock = asyncio.Lock()
        self._initialized = False
        self._stopping = False
        self._crashed = False
        self._restart_count = 0
        self._tool_cache: list[ToolDescriptor] | None = None
        self._stderr: deque[str] = deque(maxlen=STDERR_BUFFER_LINES)

    def is_running(self) -> bool:
        process = self._process
        return process is not None and process.returncode is None and self._initialized

    def recent_stderr(self) -> list[str]:
        return list(self._stderr)

    async def start(self) -> None:
        """按需启动子进程；异常退出后的重启次数受 max_restarts 约束。"""
        if self.is_running():
            return
        async with self._start_lock:
            if self.is_running():
                return
            if self._crashed:
                if self._restart_count >= self._max_restarts:
                    raise BridgeUnavailableError(
                        f"remote tool process exceeded {self._max_restarts} restart attempts"
                    )
                self._restart_count += 1
                logger.warning(
                    "restarting remote tool process",
                    extra={"event": "bridge.process.restarting", "retry": self._restart_count},
                )
                await asyncio.sleep(self._restart_delay)
            await self._spawn()

    async def stop(self) -> None:
        """停止子进程：先 terminate，超时后 kill，并清空工具缓存。"""
        self._stopping = True
        try:
            self._fail_pending(BridgeClosedError("remote tool bridge stopping"))
            self._tool_cache = None
            self._initialized = False
            process = self._process
            if process is not None and process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            readers, self._readers = self._readers, []
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            self._process = None
            self._crashed = False
            self._restart_count = 0
        finally:
            self._stopping = False

    async def list_tools(self) -> list[ToolDescriptor]:
        """列出远端工具；首次成功后缓存结果。"""
        if self._tool_cache is not None:
            return self._tool_cache

        async def fetch() -> dict[str, Any]:
            await self.start()
            return await self._rpc_call("tools/list", {})

        response = await retry_async(
            fetch,
            attempts=2,
            base_delay=self._restart_delay,
            should_retry=lambda exc: isinstance(exc, BridgeClosedError),
            op="bridge.tools_list",
        )
        if "error" in response:
            raise BridgeError(f"tools/list failed: {_error_message(response['error'])}")
        result = response.get("result") or {}
        raw_tools = result.get("tools") if isinstance(result, dict) else None
        self._tool_cache = [remote_tool_descriptor(item) for item in raw_tools or [] if isinstance(item, dict)]
        return self._tool_cache

    async def call_tool(self, name: str, params: dict[str, Any]) -> ToolResult:
        """调用远端工具；传输异常与 JSON-RPC 错误统一折叠为失败的 ToolResult。"""
        started = time.perf_counter()
        try:
            await self.start()
            response = await self._rpc_call("tools/call", {"name": name, "arguments": params})
        except Exception as exc:
            duration_ms = _elapsed_ms(started)
            logger.error(
                "remote tool call failed",
                extra={
                    "event": "bridge.tool_call.failed",
                    "external_service": REMOTE_PROVIDER,
                    "op": name,
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": params,
                },
            )
            return ToolResult(
                tool_name=name,
                provider_id=REMOTE_PROVIDER,
                success=False,
                duration_ms=duration_ms,
                error=str(exc),
            )

        duration_ms = _elapsed_ms(started)
        if "error" in response:
            return ToolResult(
                tool_name=name,
                provider_id=REMOTE_PROVIDER,
                success=False,
                duration_ms=duration_ms,
                error=_error_message(response["error"]),
            )
        result = response.get("result")
        if isinstance(result, dict) and result.get("isError"):
            return ToolResult(
                tool_name=name,
                provider_id=REMOTE_PROVIDER,
                success=False,
                data=result,
                duration_ms=duration_ms,
                error=_content_text(result) or f"tool {name} reported an error",
            )
        return ToolResult(
            tool_name=name,
            provider_id=REMOTE_PROVIDER,
            success=True,
            data=result,
            duration_ms=duration_ms,
        )

    async def _spawn(self) -> None:
        if not self._server_path.exists():
            raise BridgeUnavailableError(
                f"remote tool server not found at: {self._server_path}; "
                "set COMET_BROWSER_SERVER_PATH to the server entry point"
            )
        try:
            process = await asyncio.create_subprocess_exec(
                self._python_path,
                str(self._server_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as exc:
            self._crashed = True
            raise BridgeUnavailableError(f"failed to start remote tool process: {exc}") from exc

        self._process = process
        self._readers = [
            asyncio.create_task(self._read_stdout(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]
        logger.info(
            "remote tool process started",
            extra={"event": "bridge.process.started", "payload_preview": {"pid": process.pid}},
        )
        try:
            await self._handshake()
        except Exception:
            self._crashed = True
            if process.returncode is None:
                process.kill()
            raise
        self._initialized = True
        self._crashed = False
        self._restart_count = 0

    async def _handshake(self) -> None:
        response = await self._rpc_call(
            "initialize",
            {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
        )
        if "error" in response:
            raise BridgeError(f"initialize failed: {_error_message(response['error'])}")
        await self._send({"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}})

    async def _rpc_call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            return await asyncio.wait_for(future, timeout=self._call_timeout)
        except asyncio.TimeoutError as exc:
            raise BridgeTimeoutError(f"rpc call {method} timed out after {self._call_timeout}s") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise BridgeClosedError("remote tool process not available")
        try:
            process.stdin.write((json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise BridgeClosedError(f"failed to write to remote tool process: {exc}") from exc

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                self._handle_line(line)
        finally:
            await self._on_exit(process)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            self._stderr.append(line.decode("utf-8", errors="replace").rstrip())

    def _handle_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            return
        if not isinstance(message, dict) or message.get("id") is None:
            return
        future = self._pending.get(message["id"])
        if future is not None and not future.done():
            future.set_result(message)

    async def _on_exit(self, process: asyncio.subprocess.Process) -> None:
        if process is not self._process:
            return
        self._initialized = False
        self._fail_pending(BridgeClosedError("remote tool process exited"))
        if self._stopping:
            return
        self._crashed = True
        self._process = None
        returncode = await process.wait()
        logger.warning(
            "remote tool process exited unexpectedly",
            extra={
                "event": "bridge.process.exited",
                "status_code": returncode,
                "payload_preview": self.recent_stderr()[-5:],
            },
        )

    def _fail_pending(self, exc: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


def _content_text(result: dict[str, Any]) -> str:
    """拼接工具结果 content 中的文本片段。"""
    content = result.get("content")
    if not isinstance(content, list):
        return ""
    return "\n".join(str(item.get("text")) for item in content if isinstance(item, dict) and item.get("text"))
