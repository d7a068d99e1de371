"""远端工具桥测试：以临时 JSON-RPC 回显脚本作为子进程。"""

import sys
from pathlib import Path

import pytest

from comet_orchestrator.domain.enums import ToolCategory
from comet_orchestrator.domain.providers import REMOTE_PROVIDER
from comet_orchestrator.infra.bridge.client import BridgeUnavailableError, RemoteToolBridge

ECHO_SERVER = r'''
import json
import sys

TOOLS = [
    {"name": "comet_navigate", "description": "Navigate", "inputSchema": {"type": "object"}},
    {"name": "comet_screenshot", "description": "Screenshot"},
    {"name": "comet_list_tabs", "description": "List tabs"},
]

while True:
    line = sys.stdin.readline()
    if not line:
        break
    message = json.loads(line)
    if "id" not in message:
        continue
    method = message["method"]
    # 非 JSON 行应被客户端忽略。
    print("log: handling " + method, flush=True)
    if method == "initialize":
        result = {"protocolVersion": message["params"]["protocolVersion"], "capabilities": {}}
    elif method == "tools/list":
        result = {"tools": TOOLS}
    elif method == "tools/call":
        name = message["params"]["name"]
        if name == "crash":
            sys.stderr.write("fatal: crash requested\n")
            sys.stderr.flush()
            sys.exit(3)
        if name == "rpc_error":
            print(json.dumps({"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32000, "message": "tool exploded"}}), flush=True)
            continue
        if name == "tool_error":
            result = {"isError": True, "content": [{"type": "text", "text": "selector not found"}]}
        else:
            result = {"content": [{"type": "text", "text": json.dumps(message["params"]["arguments"])}]}
    else:
        result = {}
    print(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}), flush=True)
'''


@pytest.fixture()
def echo_server(tmp_path: Path) -> Path:
    path = tmp_path / "echo_server.py"
    path.write_text(ECHO_SERVER, encoding="utf-8")
    return path


def _bridge(server_path: Path) -> RemoteToolBridge:
    return RemoteToolBridge(
        server_path=server_path,
        python_path=sys.executable,
        call_timeout_seconds=5.0,
        max_restarts=2,
        restart_delay_seconds=0.0,
    )


@pytest.mark.asyncio
async def test_list_tools_is_converted_and_cached(echo_server: Path) -> None:
    bridge = _bridge(echo_server)
    try:
        tools = await bridge.list_tools()
        assert bridge.is_running()
        assert [tool.name for tool in tools] == ["comet_navigate", "comet_screenshot", "comet_list_tabs"]
        assert tools[0].provider_id == REMOTE_PROVIDER
        assert tools[0].qualified_name == "browser:comet_navigate"
        assert tools[0].schema == {"type": "object"}
        assert tools[1].category == ToolCategory.monitor
        assert tools[1].is_canonical is False
        assert tools[2].category == ToolCategory.tab
        assert await bridge.list_tools() is tools
    finally:
        await bridge.stop()
    assert not bridge.is_running()


@pytest.mark.asyncio
async def test_call_tool_results_are_structured(echo_server: Path) -> None:
    """成功、JSON-RPC 错误与工具级错误都以 ToolResult 返回。"""
    bridge = _bridge(echo_server)
    try:
        ok = await bridge.call_tool("comet_navigate", {"url": "https://example.com"})
        assert ok.success is True
        assert "https://example.com" in ok.data["content"][0]["text"]

        rpc_error = await bridge.call_tool("rpc_error", {})
        assert rpc_error.success is False
        assert rpc_error.error == "tool exploded"

        tool_error = await bridge.call_tool("tool_error", {})
        assert tool_error.success is False
        assert tool_error.error == "selector not found"
    finally:
        await bridge.stop()


@pytest.mark.asyncio
async def test_process_crash_is_reported_and_restarted(echo_server: Path) -> None:
    """子进程异常退出时当前调用失败，下一次调用自动重启。"""
    bridge = _bridge(echo_server)
    try:
        crashed = await bridge.call_tool("crash", {})
        assert crashed.success is False

        recovered = await bridge.call_tool("comet_navigate", {"url": "https://example.com"})
        assert recovered.success is True
        assert any("crash requested" in line for line in bridge.recent_stderr())
    finally:
        await bridge.stop()


@pytest.mark.asyncio
async def test_missing_server_script(tmp_path: Path) -> None:
    bridge = _bridge(tmp_path / "missing.py")

    result = await bridge.call_tool("comet_navigate", {})
    assert result.success is False
    assert "COMET_BROWSER_SERVER_PATH" in result.error

    with pytest.raises(BridgeUnavailableError):
        await bridge.list_tools()
