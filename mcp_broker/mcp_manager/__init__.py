"""
MCP Manager — управление внешними MCP серверами.

Позволяет:
- Подключать/отключать серверы по конфигу
- Собирать каталог инструментов server__tool
- Вызывать и прерывать инструменты
- Разрешать автозапуск инструментов в разговоре
"""

from mcp_broker.mcp_manager.cancellation import CancellationToken
from mcp_broker.mcp_manager.config import (
    MCPConfig,
    MCPConfigStorage,
    MCPServerConfig,
    MCPServerParameters,
    MCPToolOption,
    get_config_storage,
    get_mcp_config,
    parse_server_parameters,
    save_mcp_config,
)
from mcp_broker.mcp_manager.exceptions import (
    MCPError,
    MCPNotAvailableError,
)
from mcp_broker.mcp_manager.manager import MCPManager, get_mcp_manager
from mcp_broker.mcp_manager.models import (
    MCPTool,
    ServerState,
    ServerStatus,
    ToolCallResponse,
    ToolCallStatus,
)
from mcp_broker.mcp_manager.tool_names import TOOL_NAME_DELIMITER, get_tool_name, parse_tool_name

__all__ = [
    "CancellationToken",
    "MCPConfig",
    "MCPConfigStorage",
    "MCPServerConfig",
    "MCPServerParameters",
    "MCPToolOption",
    "get_config_storage",
    "get_mcp_config",
    "parse_server_parameters",
    "save_mcp_config",
    "MCPError",
    "MCPNotAvailableError",
    "MCPManager",
    "get_mcp_manager",
    "MCPTool",
    "ServerState",
    "ServerStatus",
    "ToolCallResponse",
    "ToolCallStatus",
    "TOOL_NAME_DELIMITER",
    "get_tool_name",
    "parse_tool_name",
]
