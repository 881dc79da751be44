"""Shared fixtures for mcp_broker tests."""

import asyncio
from typing import Any

import pytest

from mcp_broker.mcp_manager.cancellation import CancellationToken
from mcp_broker.mcp_manager.config import MCPConfig, MCPServerParameters
from mcp_broker.mcp_manager.manager import MCPManager
from mcp_broker.mcp_manager.models import MCPTool, TextContent, ToolCallResult


DEFAULT_ENV = {"PATH": "/usr/bin", "HOME": "/home/test"}


class FakeClient:
    """In-memory MCP client driven by its FakeClientFactory."""

    def __init__(self, name: str, factory: "FakeClientFactory") -> None:
        self.name = name
        self._factory = factory
        self.parameters: MCPServerParameters | None = None
        self.calls: list[tuple[str, Any]] = []
        self.list_tools_count = 0
        self.closed = False

    async def connect(self, parameters: MCPServerParameters) -> None:
        self.parameters = parameters
        gate = self._factory.connect_gates.get(parameters.command)
        if gate is not None:
            await gate.wait()
        error = self._factory.connect_errors.get(self.name)
        if error is not None:
            raise error

    async def list_tools(self) -> list[MCPTool]:
        self.list_tools_count += 1
        error = self._factory.list_errors.get(self.name)
        if error is not None:
            raise error
        return list(self._factory.tools.get(self.name, []))

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        cancellation: CancellationToken,
    ) -> ToolCallResult:
        self.calls.append((name, arguments))
        gate = self._factory.call_gates.get(self.name)
        if gate is not None:
            await gate.wait()
        result = self._factory.call_results.get(
            self.name,
            ToolCallResult(content=[TextContent(text=f"{name} called")]),
        )
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class FakeClientFactory:
    """
    Creates FakeClients and holds their behaviour.

    connect_gates are keyed by command so two generations of one server
    can be held independently; everything else is keyed by server name.
    """

    def __init__(self) -> None:
        self.clients: list[FakeClient] = []
        self.tools: dict[str, list[MCPTool]] = {}
        self.connect_errors: dict[str, Exception] = {}
        self.list_errors: dict[str, Exception] = {}
        self.connect_gates: dict[str, asyncio.Event] = {}
        self.call_gates: dict[str, asyncio.Event] = {}
        self.call_results: dict[str, ToolCallResult | Exception] = {}

    def __call__(self, name: str) -> FakeClient:
        client = FakeClient(name, self)
        self.clients.append(client)
        return client

    def clients_for(self, name: str) -> list[FakeClient]:
        return [c for c in self.clients if c.name == name]


@pytest.fixture
def factory():
    """Fake transport with two tools on alpha and one on beta."""
    factory = FakeClientFactory()
    factory.tools["alpha"] = [
        MCPTool(name="echo", description="Echo input", input_schema={"type": "object"}),
        MCPTool(name="shout", description="Echo loudly"),
    ]
    factory.tools["beta"] = [MCPTool(name="search", description="Search the web")]
    return factory


@pytest.fixture
def config():
    """Two enabled servers."""
    config = MCPConfig()
    config.add_server("alpha", "alpha-server", args=["--stdio"], env={"TOKEN": "secret"})
    config.add_server("beta", "beta-server")
    return config


@pytest.fixture
def make_manager(factory):
    """Builds managers wired to the fake transport."""

    def make(config: MCPConfig, **kwargs) -> MCPManager:
        kwargs.setdefault("client_factory", factory)
        kwargs.setdefault("env_provider", lambda: dict(DEFAULT_ENV))
        kwargs.setdefault("available", True)
        return MCPManager(config, **kwargs)

    return make


@pytest.fixture
async def manager(make_manager, config):
    """Initialized manager over the default config."""
    manager = make_manager(config)
    await manager.initialize()
    yield manager
    await manager.cleanup()
