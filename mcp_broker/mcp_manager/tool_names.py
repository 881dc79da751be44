"""
Tool names — кодирование имён инструментов как serverName__toolName.

Имя сервера проверяется при регистрации, имя инструмента от сервера
передаётся как есть. Разбор идёт по первому вхождению разделителя.
"""

import re

from mcp_broker.mcp_manager.exceptions import InvalidToolNameError, MCPConfigurationError


TOOL_NAME_DELIMITER = "__"

# OpenAI function calling допускает только [a-zA-Z0-9_-]
_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_server_name(name: str, delimiter: str = TOOL_NAME_DELIMITER) -> None:
    """
    Проверяет имя сервера.

    Raises:
        MCPConfigurationError: недопустимые символы или имя содержит разделитель
    """
    if not _SERVER_NAME_RE.match(name):
        raise MCPConfigurationError(
            f"Invalid MCP server name: {name}. "
            "Only alphanumeric characters, underscores, and hyphens are allowed."
        )
    if delimiter in name:
        raise MCPConfigurationError(
            f"MCP server name {name} should not contain the delimiter {delimiter}."
        )


def parse_tool_name(name: str, delimiter: str = TOOL_NAME_DELIMITER) -> tuple[str, str]:
    """
    Разбирает квалифицированное имя.

    Returns:
        (server_name, tool_name)

    Raises:
        InvalidToolNameError: нет разделителя или одна из частей пустая
    """
    match = re.match(rf"^(.+?){re.escape(delimiter)}(.+)$", name, re.DOTALL)
    if not match:
        raise InvalidToolNameError(name)

    server_name, tool_name = match.group(1), match.group(2)
    if not server_name or not tool_name:
        raise InvalidToolNameError(name)

    return server_name, tool_name


def get_tool_name(server_name: str, tool_name: str, delimiter: str = TOOL_NAME_DELIMITER) -> str:
    """Собирает квалифицированное имя (без валидации)."""
    return f"{server_name}{delimiter}{tool_name}"
