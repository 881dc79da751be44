"""
MCP Client — транспорт до одного MCP сервера.

Менеджер работает только через протокол MCPClient (connect, list_tools,
call_tool, close). StdioMCPClient — реализация по умолчанию поверх
официального mcp SDK: подпроцесс + JSON-RPC по stdio.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from mcp_broker.config import settings
from mcp_broker.mcp_manager.cancellation import CancellationToken
from mcp_broker.mcp_manager.config import MCPServerParameters
from mcp_broker.mcp_manager.models import MCPTool, ToolCallResult


class MCPClient(Protocol):
    """Клиент одного MCP сервера."""

    async def connect(self, parameters: MCPServerParameters) -> None: ...

    async def list_tools(self) -> list[MCPTool]: ...

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        cancellation: CancellationToken,
    ) -> ToolCallResult: ...

    async def close(self) -> None: ...


class StdioMCPClient:
    """
    Stdio клиент на mcp SDK.

    stdio_client и ClientSession — anyio контексты, их нельзя закрыть
    из другой задачи. Поэтому сессия живёт в отдельной задаче-владельце,
    а close() только сигналит ей и ждёт завершения.
    """

    def __init__(self, name: str, connect_timeout: float | None = None) -> None:
        self.name = name
        self._connect_timeout = connect_timeout or settings.connect_timeout
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._closing = asyncio.Event()

    async def connect(self, parameters: MCPServerParameters) -> None:
        """Запускает подпроцесс и выполняет handshake."""
        if self._runner is not None:
            raise RuntimeError(f"MCP client {self.name} is already connected")

        self._ready = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(parameters))

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            self._ready.cancel()
            await self._abort_runner()
            raise TimeoutError(f"handshake timed out after {self._connect_timeout}s")

        logger.debug(f"MCP client {self.name} connected: {parameters.command}")

    async def _run(self, parameters: MCPServerParameters) -> None:
        """Задача-владелец сессии."""
        server_params = StdioServerParameters(
            command=parameters.command,
            args=list(parameters.args),
            env=dict(parameters.env) or None,
        )

        try:
            async with stdio_client(server_params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set_result(None)
                    await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                logger.warning(f"MCP client {self.name} stopped: {e}")
        finally:
            self._session = None

    async def _abort_runner(self) -> None:
        """Отменяет задачу-владельца без ожидания graceful shutdown."""
        self._closing.set()
        runner, self._runner = self._runner, None
        if runner is None:
            return

        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        logger.debug(f"MCP client {self.name} aborted")

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError(f"MCP client {self.name} is not connected")
        return self._session

    async def list_tools(self) -> list[MCPTool]:
        result = await self._require_session().list_tools()
        return [
            MCPTool(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {},
                raw=tool.model_dump(mode="json", exclude_none=True),
            )
            for tool in result.tools
        ]

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        cancellation: CancellationToken,
    ) -> ToolCallResult:
        session = self._require_session()
        result = await cancellation.run(session.call_tool(name, arguments))
        return ToolCallResult.from_dict(result.model_dump(mode="json", exclude_none=True))

    async def close(self) -> None:
        """Закрывает сессию и останавливает подпроцесс."""
        self._closing.set()
        if self._runner is None:
            return

        try:
            await asyncio.wait_for(self._runner, timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"MCP client {self.name} did not stop in time, cancelling")
        finally:
            self._runner = None

        logger.debug(f"MCP client {self.name} closed")
