"""
Env — окружение для подпроцессов MCP серверов.

GUI-приложения и сервисы часто стартуют без PATH пользователя,
поэтому окружение берётся из login shell (как в терминале),
а при неудаче — из os.environ.
"""

import functools
import os
import subprocess
import sys

from loguru import logger

from mcp_broker.config import settings


# Платформы, где нельзя запускать подпроцессы
_NO_SUBPROCESS_PLATFORMS = {"emscripten", "wasi", "ios", "android"}


def is_tool_execution_supported() -> bool:
    """Проверяет, можно ли запускать MCP серверы в этом окружении."""
    if not settings.tool_execution_enabled:
        return False
    return sys.platform not in _NO_SUBPROCESS_PLATFORMS


def _parse_env_output(output: bytes) -> dict[str, str]:
    """Парсит вывод `env -0` (записи разделены NUL)."""
    env: dict[str, str] = {}
    for entry in output.decode("utf-8", errors="replace").split("\0"):
        key, sep, value = entry.partition("=")
        if sep and key:
            env[key] = value
    return env


def shell_env(timeout: float | None = None) -> dict[str, str]:
    """
    Окружение интерактивного login shell пользователя.

    Returns:
        Переменные окружения или {} если shell недоступен
    """
    shell = os.environ.get("SHELL")
    if not shell or sys.platform == "win32":
        return {}

    try:
        result = subprocess.run(
            [shell, "-ilc", "env -0"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout or settings.shell_env_timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Failed to read shell environment from {shell}: {e}")
        return {}

    if result.returncode != 0:
        logger.warning(f"Shell {shell} exited with {result.returncode} while reading environment")
        return {}

    return _parse_env_output(result.stdout)


@functools.lru_cache(maxsize=1)
def get_default_env() -> dict[str, str]:
    """Окружение по умолчанию для подпроцессов (кэшируется на процесс)."""
    env = dict(os.environ)
    if settings.inherit_shell_env:
        discovered = shell_env()
        if discovered:
            logger.debug(f"Loaded {len(discovered)} variables from login shell")
            env.update(discovered)
    return env
