"""
MCP Broker — точка входа.

Без аргументов подключает серверы из конфига и печатает каталог.
С аргументами вызывает инструмент:

    python -m mcp_broker.main server__tool '{"arg": "value"}'
"""

import asyncio
import json
import sys

from loguru import logger

from mcp_broker.config import settings
from mcp_broker.mcp_manager import get_mcp_manager


def setup_logging() -> None:
    """Настраивает логирование."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level,
    )


async def main(argv: list[str] | None = None) -> int:
    """Точка входа."""
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()
    logger.info(f"Starting MCP broker (config: {settings.servers_path})")

    manager = get_mcp_manager()
    if manager.disabled:
        logger.error("Tool execution is not available in this environment")
        return 1

    try:
        await manager.initialize()

        for server in manager.get_servers():
            if server.is_connected:
                logger.info(f"{server.name}: {server.status.value} ({len(server.tools)} tools)")
            elif server.error_message:
                logger.warning(f"{server.name}: {server.status.value} - {server.error_message}")
            else:
                logger.info(f"{server.name}: {server.status.value}")

        if not argv:
            tools = await manager.list_available_tools()
            for tool in tools:
                print(f"{tool.name}\t{tool.description}")
            return 0

        name = argv[0]
        arguments = argv[1] if len(argv) > 1 else None
        response = await manager.call_tool(name, arguments)
        print(json.dumps(response.to_dict(), ensure_ascii=False, indent=2))
        return 0 if response.error is None else 2

    finally:
        await manager.cleanup()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
