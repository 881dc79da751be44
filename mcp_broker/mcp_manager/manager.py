"""
MCPManager — жизненный цикл MCP серверов и маршрутизация вызовов.

- Подключает серверы из конфига и переподключает при его изменении
- Отдаёт объединённый каталог инструментов вида server__tool
- Выполняет вызовы с отменой по call_id и внешнему сигналу
- Хранит разовые разрешения на автозапуск по разговорам

Всё работает в одном event loop без блокировок: состояние серверов
меняется только целиковой публикацией снимка в ServerRegistry.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from loguru import logger

from mcp_broker.config import settings
from mcp_broker.env import get_default_env, is_tool_execution_supported
from mcp_broker.mcp_manager.allowlist import ConversationAllowlist
from mcp_broker.mcp_manager.cancellation import CancellationToken
from mcp_broker.mcp_manager.client import MCPClient, StdioMCPClient
from mcp_broker.mcp_manager.config import (
    ConfigListener,
    MCPConfig,
    MCPServerConfig,
    get_config_storage,
    get_mcp_config,
)
from mcp_broker.mcp_manager.exceptions import (
    InvalidToolNameError,
    MCPConfigurationError,
    MCPConnectionError,
    MCPDiscoveryError,
    MCPNotAvailableError,
    ToolArgumentsError,
    ToolCallAbortedError,
    ToolCallError,
    ToolResolutionError,
)
from mcp_broker.mcp_manager.models import (
    MCPTool,
    ServerState,
    ServerStatus,
    TextContent,
    ToolCallResponse,
    ToolCallResult,
)
from mcp_broker.mcp_manager.registry import ServerRegistry, ServersSnapshot, ServersSubscriber
from mcp_broker.mcp_manager.tool_names import (
    TOOL_NAME_DELIMITER,
    get_tool_name,
    parse_tool_name,
    validate_server_name,
)


ClientFactory = Callable[[str], MCPClient]
SettingsListenerRegistrar = Callable[[ConfigListener], Callable[[], None]]


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


def parse_tool_arguments(arguments: dict[str, Any] | str | None) -> dict[str, Any] | None:
    """
    Нормализует аргументы вызова.

    Строка разбирается как JSON объект, пустая строка — без аргументов.

    Raises:
        ToolArgumentsError: невалидный JSON или не объект
    """
    if not isinstance(arguments, str):
        return arguments

    if arguments == "":
        return {}

    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(f"Invalid tool arguments: {e}") from e

    if not isinstance(parsed, dict):
        raise ToolArgumentsError(
            f"Invalid tool arguments: expected a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def interpret_tool_result(result: ToolCallResult) -> ToolCallResponse:
    """
    Превращает сырой результат в ответ.

    Поддерживается только текстовый контент (первый блок).

    Raises:
        ToolCallError: пустой результат или неподдерживаемый тип контента
    """
    if not result.content:
        raise ToolCallError("Tool call returned no content")

    first = result.content[0]
    if not isinstance(first, TextContent):
        raise ToolCallError(
            f"Tool result with content type {first.type} is not currently supported."
        )

    if result.is_error:
        return ToolCallResponse.failure(first.text)
    return ToolCallResponse.success(first.text)


class MCPManager:
    """
    Менеджер MCP серверов.

    Args:
        config: текущая конфигурация серверов
        register_settings_listener: подписка на изменения конфига
            (например MCPConfigStorage.on_change)
        client_factory: создаёт клиента по имени сервера
        env_provider: окружение по умолчанию для подпроцессов
        available: можно ли выполнять инструменты (None — определить по платформе)
        max_conversations: лимит разговоров в allowlist
    """

    TOOL_NAME_DELIMITER = TOOL_NAME_DELIMITER

    def __init__(
        self,
        config: MCPConfig,
        register_settings_listener: SettingsListenerRegistrar | None = None,
        client_factory: ClientFactory | None = None,
        env_provider: Callable[[], dict[str, str]] | None = None,
        available: bool | None = None,
        max_conversations: int | None = None,
    ) -> None:
        if available is None:
            available = is_tool_execution_supported()
        self._available = available

        self._config = config
        self._client_factory = client_factory or StdioMCPClient
        self._env_provider = env_provider or get_default_env
        self._default_env: dict[str, str] | None = None

        self._registry = ServerRegistry(on_publish=self._invalidate_tools_cache)
        self._available_tools_cache: list[MCPTool] | None = None
        self._active_tool_calls: dict[str, CancellationToken] = {}
        self._allowlist = ConversationAllowlist(
            max_conversations or settings.allowlist_max_conversations
        )
        self._attempts = itertools.count(1)
        self._background: set[asyncio.Task] = set()

        self._unsubscribe_from_settings: Callable[[], None] | None = None
        if register_settings_listener is not None:
            self._unsubscribe_from_settings = register_settings_listener(self._on_settings_change)

    @property
    def disabled(self) -> bool:
        """True если выполнение инструментов недоступно."""
        return not self._available

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Подключает все серверы из конфига параллельно."""
        if self.disabled:
            logger.info("MCP tool execution is not available, skipping initialization")
            return

        version = self._registry.version
        servers = await asyncio.gather(
            *(self._connect_server(c) for c in self._config.servers.values())
        )

        # Пока подключались, пришёл новый конфиг: его состояние новее
        if self._registry.version != version:
            logger.warning("MCP settings changed during initialization, discarding initial connections")
            self._registry.close_in_background([s.client for s in servers if s.is_connected])
            return

        self._registry.publish(servers)
        connected = sum(1 for s in servers if s.is_connected)
        logger.info(f"MCP initialized: {connected}/{len(servers)} servers connected")

    async def cleanup(self) -> None:
        """Отключает всех клиентов и очищает состояние."""
        if self._unsubscribe_from_settings:
            self._unsubscribe_from_settings()
            self._unsubscribe_from_settings = None

        # Активные вызовы не прерываются, только забываются
        self._active_tool_calls.clear()
        self._allowlist.clear()
        self._registry.clear_subscribers()

        # Пустой снимок закрывает всех CONNECTED клиентов
        self._registry.publish(())
        await self._registry.drain()
        logger.info("MCP manager cleaned up")

    def get_servers(self) -> ServersSnapshot:
        return self._registry.current()

    def subscribe_servers_change(self, callback: ServersSubscriber) -> Callable[[], None]:
        return self._registry.subscribe(callback)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _on_settings_change(self, config: MCPConfig) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Сохранение из синхронного кода: применится при следующем initialize()
            self._config = config
            logger.warning("MCP settings saved outside the event loop, reconnect deferred")
            return

        task = loop.create_task(self.handle_settings_update(config))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def handle_settings_update(self, config: MCPConfig) -> None:
        """
        Приводит подключения к новому конфигу.

        Серверы с теми же parameters и enabled переносятся как есть.
        Остальные сразу публикуются как CONNECTING и подключаются в фоне;
        каждый результат патчит только свой слот.
        """
        self._config = config
        if self.disabled:
            return

        previous = {s.name: s for s in self._registry.current()}
        updated: list[ServerState] = []
        pending: list[ServerState] = []

        for server_config in config.servers.values():
            existing = previous.get(server_config.id)
            if (
                existing is not None
                and existing.config.parameters == server_config.parameters
                and existing.config.enabled == server_config.enabled
            ):
                if existing.config is not server_config:
                    existing = replace(existing, config=server_config)
                updated.append(existing)
                continue

            if not server_config.enabled:
                updated.append(ServerState.disconnected(server_config))
                continue

            placeholder = ServerState.connecting(server_config, attempt=next(self._attempts))
            updated.append(placeholder)
            pending.append(placeholder)

        self._registry.publish(updated)

        if pending:
            logger.debug(f"Reconnecting MCP servers: {', '.join(p.name for p in pending)}")
            await asyncio.gather(*(self._connect_and_patch(p) for p in pending))

    async def _connect_and_patch(self, placeholder: ServerState) -> None:
        server = await self._connect_server(placeholder.config)

        current = self._registry.find(placeholder.name)
        if (
            current is None
            or current.status is not ServerStatus.CONNECTING
            or current.attempt != placeholder.attempt
        ):
            # Слот уже занят более новой попыткой
            logger.debug(f"Discarding stale connection result for MCP server {placeholder.name}")
            if server.is_connected:
                self._registry.close_in_background([server.client])
            return

        resolved = replace(server, config=current.config)
        self._registry.publish(
            lambda prev: [resolved if s is current else s for s in prev]
        )

    async def _connect_server(self, server_config: MCPServerConfig) -> ServerState:
        """Вычисляет состояние сервера; реестр не трогает."""
        if self.disabled:
            raise MCPNotAvailableError()

        name = server_config.id

        if not server_config.enabled:
            return ServerState.disconnected(server_config)

        try:
            validate_server_name(name)
        except MCPConfigurationError as e:
            logger.error(f"MCP server {name} rejected: {e}")
            return ServerState.errored(server_config, e)

        parameters = replace(
            server_config.parameters,
            env={**self._get_default_env(), **server_config.parameters.env},
        )
        client = self._client_factory(name)

        try:
            await client.connect(parameters)
        except Exception as e:
            error = MCPConnectionError(f"Failed to connect to MCP server {name}: {_describe(e)}")
            logger.error(str(error))
            return ServerState.errored(server_config, error)

        try:
            tools = await client.list_tools()
        except Exception as e:
            error = MCPDiscoveryError(f"Failed to list tools for MCP server {name}: {_describe(e)}")
            logger.error(str(error))
            self._registry.close_in_background([client])
            return ServerState.errored(server_config, error)

        logger.info(f"MCP server {name} connected ({len(tools)} tools)")
        return ServerState.connected(server_config, client, tools)

    def _get_default_env(self) -> dict[str, str]:
        if self._default_env is None:
            self._default_env = self._env_provider()
        return self._default_env

    # ------------------------------------------------------------------
    # Tool catalog
    # ------------------------------------------------------------------

    def _invalidate_tools_cache(self) -> None:
        self._available_tools_cache = None

    async def list_available_tools(self) -> list[MCPTool]:
        """
        Каталог инструментов всех CONNECTED серверов.

        Результат кэшируется до следующей публикации реестра;
        возвращаемый список нельзя мутировать.
        """
        if self.disabled:
            return []

        if self._available_tools_cache is not None:
            return self._available_tools_cache

        version = self._registry.version
        results = await asyncio.gather(
            *(self._list_server_tools(s) for s in self._registry.current() if s.is_connected)
        )
        tools = [tool for server_tools in results for tool in server_tools]

        # Реестр сменился во время запроса, каталог устарел
        if self._registry.version == version:
            self._available_tools_cache = tools
        return tools

    async def _list_server_tools(self, server: ServerState) -> list[MCPTool]:
        try:
            tools = await server.client.list_tools()
        except Exception as e:
            logger.error(f"Failed to list tools for MCP server {server.name}: {_describe(e)}")
            return []

        return [
            tool.with_name(get_tool_name(server.name, tool.name))
            for tool in tools
            if not server.config.tool_option(tool.name).disabled
        ]

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def allow_tool_for_conversation(self, tool_name: str, conversation_id: str) -> None:
        self._allowlist.allow(tool_name, conversation_id)

    def forget_conversation(self, conversation_id: str) -> bool:
        return self._allowlist.forget(conversation_id)

    def is_tool_execution_allowed(self, tool_name: str, conversation_id: str | None = None) -> bool:
        """
        Можно ли выполнить инструмент без подтверждения.

        Сначала разовые разрешения разговора, затем allow_auto_execution
        из конфига сервера. Никогда не бросает исключений.
        """
        if conversation_id is not None and self._allowlist.is_allowed(tool_name, conversation_id):
            return True

        try:
            server_name, local_name = parse_tool_name(tool_name)
        except InvalidToolNameError:
            return False

        server = self._registry.find(server_name)
        if server is None:
            return False
        return server.config.tool_option(local_name).allow_auto_execution

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | str | None = None,
        *,
        call_id: str | None = None,
        signal: CancellationToken | None = None,
    ) -> ToolCallResponse:
        """
        Выполняет инструмент server__tool.

        Args:
            name: квалифицированное имя инструмента
            arguments: dict или JSON строка
            call_id: id вызова; новый вызов с тем же id прерывает предыдущий
            signal: внешний токен отмены

        Returns:
            ToolCallResponse со статусом SUCCESS, ERROR или ABORTED

        Raises:
            MCPNotAvailableError: выполнение инструментов недоступно
        """
        if self.disabled:
            raise MCPNotAvailableError()

        token = CancellationToken()
        if call_id is not None:
            existing = self._active_tool_calls.get(call_id)
            if existing is not None:
                logger.debug(f"Superseding tool call {call_id}")
                existing.cancel()
            self._active_tool_calls[call_id] = token

        unlink = token.link(signal) if signal is not None else None

        try:
            server_name, tool_name = parse_tool_name(name)
            server = self._registry.find(server_name)
            if server is None:
                raise ToolResolutionError(f"MCP server {server_name} not found")
            if server.status is not ServerStatus.CONNECTED:
                raise ToolResolutionError(f"MCP server {server_name} is not connected")

            parsed_arguments = parse_tool_arguments(arguments)
            logger.debug(f"Calling tool {name}: {parsed_arguments}")

            result = await token.run(
                server.client.call_tool(tool_name, parsed_arguments, token)
            )
            return interpret_tool_result(result)

        except ToolCallAbortedError:
            logger.info(f"Tool call {name} aborted")
            return ToolCallResponse.aborted()
        except Exception as e:
            logger.warning(f"Tool call {name} failed: {e}")
            return ToolCallResponse.failure(str(e) or "Unknown error occurred")
        finally:
            if unlink is not None:
                unlink()
            # Вытесненный вызов не должен удалить запись своего преемника
            if call_id is not None and self._active_tool_calls.get(call_id) is token:
                del self._active_tool_calls[call_id]

    def abort_tool_call(self, call_id: str) -> bool:
        """Прерывает активный вызов. False если вызова нет."""
        if self.disabled:
            return False

        token = self._active_tool_calls.pop(call_id, None)
        if token is None:
            return False

        token.cancel()
        logger.debug(f"Aborted tool call {call_id}")
        return True


# Singleton
_manager: MCPManager | None = None


def get_mcp_manager() -> MCPManager:
    """Возвращает глобальный менеджер, подписанный на сохранения конфига."""
    global _manager
    if _manager is None:
        storage = get_config_storage()
        _manager = MCPManager(
            config=get_mcp_config(),
            register_settings_listener=storage.on_change,
        )
    return _manager
