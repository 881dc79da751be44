"""
Exceptions — таксономия ошибок MCP менеджера.

Ошибки серверов изолируются в ServerState, ошибки вызовов
превращаются в ToolCallResponse. Наружу выбрасывается только
MCPNotAvailableError.
"""


class MCPError(Exception):
    """Базовая ошибка MCP менеджера."""


class MCPConfigurationError(MCPError):
    """Невалидная конфигурация сервера (имя, параметры запуска)."""


class MCPConnectionError(MCPError):
    """Не удалось запустить сервер или выполнить handshake."""


class MCPDiscoveryError(MCPError):
    """Сервер подключён, но список инструментов получить не удалось."""


class MCPNotAvailableError(MCPError):
    """Выполнение инструментов недоступно в текущем окружении."""

    def __init__(self, message: str = "MCP is not available in this environment") -> None:
        super().__init__(message)


class ToolResolutionError(MCPError):
    """Инструмент не удалось сопоставить живому серверу."""


class InvalidToolNameError(ToolResolutionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid tool name: {name}")
        self.name = name


class ToolCallError(MCPError):
    """Сервер вернул результат, который нельзя отдать вызывающему."""


class ToolArgumentsError(ToolCallError):
    """Аргументы вызова не разобрались — ошибка вызывающего, а не сервера."""


class ToolCallAbortedError(MCPError):
    """Вызов прерван (внешним сигналом или более новым вызовом с тем же id)."""

    def __init__(self, message: str = "Tool call was aborted") -> None:
        super().__init__(message)
