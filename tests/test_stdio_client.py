"""Integration tests for StdioMCPClient against a real stdio server."""

import asyncio
import os
import sys
import textwrap

import pytest

from mcp_broker.mcp_manager.cancellation import CancellationToken
from mcp_broker.mcp_manager.client import StdioMCPClient
from mcp_broker.mcp_manager.config import MCPServerParameters
from mcp_broker.mcp_manager.models import TextContent


SERVER = textwrap.dedent('''
    from mcp.server.fastmcp import FastMCP

    server = FastMCP("echo")


    @server.tool()
    def echo(text: str) -> str:
        """Echo text back."""
        return text


    server.run()
''')


@pytest.fixture
def echo_server(tmp_path):
    script = tmp_path / "echo_server.py"
    script.write_text(SERVER)
    return MCPServerParameters(
        command=sys.executable,
        args=(str(script),),
        env=dict(os.environ),
    )


class TestStdioMCPClient:
    async def test_list_and_call(self, echo_server):
        client = StdioMCPClient("echo", connect_timeout=30)
        await client.connect(echo_server)
        try:
            tools = await client.list_tools()
            assert [t.name for t in tools] == ["echo"]
            assert tools[0].description == "Echo text back."
            assert tools[0].input_schema["properties"]["text"]["type"] == "string"

            result = await client.call_tool("echo", {"text": "hi"}, CancellationToken())
            assert not result.is_error
            assert result.content[0] == TextContent(text="hi")
        finally:
            await client.close()

    async def test_missing_command(self):
        client = StdioMCPClient("missing", connect_timeout=10)

        with pytest.raises(Exception):
            await client.connect(MCPServerParameters(command="/nonexistent/mcp-server"))
        await client.close()

    async def test_not_connected(self):
        client = StdioMCPClient("idle")

        with pytest.raises(RuntimeError, match="not connected"):
            await client.list_tools()

    async def test_handshake_timeout_cancels_runner(self, monkeypatch):
        client = StdioMCPClient("hung", connect_timeout=0.05)
        cancelled = []
        close_calls = []

        async def hang(parameters):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        async def close():
            close_calls.append(True)

        monkeypatch.setattr(client, "_run", hang)
        monkeypatch.setattr(client, "close", close)

        with pytest.raises(TimeoutError, match="handshake timed out"):
            await client.connect(MCPServerParameters(command="hung-server"))

        assert cancelled == [True]
        assert close_calls == []
        assert client._runner is None
