"""
MCP Registry — единственный источник правды о состоянии серверов.

Снимок серверов — tuple, который заменяется целиком через publish(),
никогда не мутируется. При каждой публикации:
1. клиенты, выпавшие из CONNECTED, закрываются в фоне
2. вызываются on_publish хуки (инвалидация кэша каталога)
3. синхронно уведомляются подписчики
"""

import asyncio
from collections.abc import Callable

from loguru import logger

from mcp_broker.mcp_manager.client import MCPClient
from mcp_broker.mcp_manager.models import ServerState


ServersSnapshot = tuple[ServerState, ...]
ServersUpdater = Callable[[ServersSnapshot], ServersSnapshot | list[ServerState]]
ServersSubscriber = Callable[[ServersSnapshot], None]


class ServerRegistry:
    """Версионированный снимок состояний серверов."""

    def __init__(self, on_publish: Callable[[], None] | None = None) -> None:
        self._servers: ServersSnapshot = ()
        self._version = 0
        self._on_publish = on_publish
        self._subscribers: list[ServersSubscriber] = []
        self._background: set[asyncio.Task] = set()

    @property
    def version(self) -> int:
        """Растёт на каждой публикации."""
        return self._version

    def current(self) -> ServersSnapshot:
        return self._servers

    def find(self, name: str) -> ServerState | None:
        for server in self._servers:
            if server.name == name:
                return server
        return None

    def publish(self, servers_or_updater: ServersSnapshot | list[ServerState] | ServersUpdater) -> ServersSnapshot:
        """
        Заменяет снимок целиком.

        Args:
            servers_or_updater: новый список или функция prev -> next
        """
        previous = self._servers
        if callable(servers_or_updater):
            next_servers = tuple(servers_or_updater(previous))
        else:
            next_servers = tuple(servers_or_updater)

        still_connected = {
            id(s.client) for s in next_servers if s.is_connected
        }
        stale_clients = [
            s.client for s in previous
            if s.is_connected and id(s.client) not in still_connected
        ]

        self._servers = next_servers
        self._version += 1

        if stale_clients:
            self.close_in_background(stale_clients)

        # Кэш инвалидируется до уведомления подписчиков
        if self._on_publish:
            self._on_publish()
        self._notify()

        return next_servers

    def subscribe(self, callback: ServersSubscriber) -> Callable[[], None]:
        """
        Подписка на изменения снимка.

        Returns:
            Функция отписки
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def clear_subscribers(self) -> None:
        self._subscribers.clear()

    def _notify(self) -> None:
        servers = self._servers
        for callback in list(self._subscribers):
            try:
                callback(servers)
            except Exception as e:
                logger.error(f"Servers subscriber failed: {e}")

    def close_in_background(self, clients: list[MCPClient]) -> None:
        """Закрывает клиентов в фоне, не блокируя публикацию."""
        task = asyncio.get_running_loop().create_task(close_clients(clients))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Дожидается фоновых закрытий (для shutdown и тестов)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


async def close_clients(clients: list[MCPClient]) -> None:
    """Best-effort закрытие: ошибки только логируются."""
    results = await asyncio.gather(
        *(client.close() for client in clients),
        return_exceptions=True,
    )
    for client, result in zip(clients, results):
        if isinstance(result, Exception):
            name = getattr(client, "name", type(client).__name__)
            logger.warning(f"Failed to close MCP client {name}: {result}")
