"""
MCP Config — хранение конфигурации MCP серверов.

Конфиг неизменяем по версиям: любое изменение сервера создаёт новый
MCPServerConfig, поэтому менеджер может сравнивать старый и новый
конфиг по значению и не переподключать неизменённые серверы.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_broker.config import settings
from mcp_broker.mcp_manager.exceptions import MCPConfigurationError
from mcp_broker.mcp_manager.tool_names import validate_server_name


@dataclass(frozen=True)
class MCPServerParameters:
    """Параметры запуска подпроцесса."""
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
        }


@dataclass(frozen=True)
class MCPToolOption:
    """Настройки одного инструмента сервера."""
    disabled: bool = False
    allow_auto_execution: bool = False


@dataclass(frozen=True)
class MCPServerConfig:
    """Конфигурация одного MCP сервера."""
    id: str
    parameters: MCPServerParameters
    enabled: bool = True
    tool_options: dict[str, MCPToolOption] = field(default_factory=dict)

    def tool_option(self, tool_name: str) -> MCPToolOption:
        return self.tool_options.get(tool_name) or MCPToolOption()


class _ServerParametersSchema(BaseModel):
    """Схема параметров запуска: {"command": str, "args"?: [str], "env"?: {str: str}}."""

    model_config = ConfigDict(extra="forbid", strict=True)

    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


_FIELD_ERRORS = {
    "command": "command: expected a non-empty string",
    "args": "args: expected a list of strings",
    "env": "env: expected a mapping of strings to strings",
}


def _describe_validation_error(error: ValidationError) -> str:
    errors = error.errors()

    unknown = sorted(str(e["loc"][0]) for e in errors if e["type"] == "extra_forbidden")
    if unknown:
        return f"Unknown parameter keys: {', '.join(unknown)}"

    first = errors[0]
    if first["type"] == "json_invalid":
        return f"Parameters must be valid JSON: {first['msg']}"
    if not first["loc"]:
        return "Parameters must be a JSON object"
    return _FIELD_ERRORS.get(str(first["loc"][0]), first["msg"])


def parse_server_parameters(raw: str | dict[str, Any]) -> MCPServerParameters:
    """
    Валидирует параметры запуска (JSON строка или dict).

    Формат: {"command": str, "args"?: [str], "env"?: {str: str}},
    другие ключи запрещены.

    Raises:
        MCPConfigurationError: невалидный JSON или схема
    """
    try:
        if isinstance(raw, str):
            if not raw.strip():
                raise MCPConfigurationError("Parameters are required")
            schema = _ServerParametersSchema.model_validate_json(raw)
        else:
            schema = _ServerParametersSchema.model_validate(raw)
    except ValidationError as e:
        raise MCPConfigurationError(_describe_validation_error(e)) from e

    return MCPServerParameters(command=schema.command, args=tuple(schema.args), env=dict(schema.env))


@dataclass
class MCPConfig:
    """Конфигурация всех MCP серверов (порядок = порядок добавления)."""
    servers: dict[str, MCPServerConfig] = field(default_factory=dict)

    def add_server(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        enabled: bool = True,
    ) -> MCPServerConfig:
        """
        Добавляет сервер.

        Raises:
            MCPConfigurationError: невалидное имя или сервер уже есть
        """
        if not name:
            raise MCPConfigurationError("Name is required")
        validate_server_name(name)
        if name in self.servers:
            raise MCPConfigurationError("Server with same name already exists")

        server = MCPServerConfig(
            id=name,
            parameters=parse_server_parameters({
                "command": command,
                "args": args or [],
                "env": env or {},
            }),
            enabled=enabled,
        )
        self.servers[name] = server
        logger.info(f"Added MCP server: {name}")
        return server

    def remove_server(self, name: str) -> bool:
        """Удаляет сервер."""
        if name in self.servers:
            del self.servers[name]
            logger.info(f"Removed MCP server: {name}")
            return True
        return False

    def enable_server(self, name: str) -> bool:
        """Включает сервер."""
        if name in self.servers:
            self.servers[name] = replace(self.servers[name], enabled=True)
            logger.info(f"Enabled MCP server: {name}")
            return True
        return False

    def disable_server(self, name: str) -> bool:
        """Отключает сервер."""
        if name in self.servers:
            self.servers[name] = replace(self.servers[name], enabled=False)
            logger.info(f"Disabled MCP server: {name}")
            return True
        return False

    def set_env(self, name: str, key: str, value: str) -> bool:
        """Устанавливает env переменную для сервера."""
        if name in self.servers:
            server = self.servers[name]
            parameters = replace(server.parameters, env={**server.parameters.env, key: value})
            self.servers[name] = replace(server, parameters=parameters)
            logger.debug(f"Set {name}.env.{key}")
            return True
        return False

    def set_tool_option(
        self,
        name: str,
        tool_name: str,
        disabled: bool | None = None,
        allow_auto_execution: bool | None = None,
    ) -> bool:
        """Меняет настройки инструмента (None — оставить как есть)."""
        if name not in self.servers:
            return False

        server = self.servers[name]
        option = server.tool_option(tool_name)
        if disabled is not None:
            option = replace(option, disabled=disabled)
        if allow_auto_execution is not None:
            option = replace(option, allow_auto_execution=allow_auto_execution)

        self.servers[name] = replace(
            server,
            tool_options={**server.tool_options, tool_name: option},
        )
        logger.debug(f"Set {name}.tool_options.{tool_name}: {option}")
        return True

    def get_enabled_servers(self) -> dict[str, MCPServerConfig]:
        """Возвращает только включённые серверы."""
        return {
            name: server
            for name, server in self.servers.items()
            if server.enabled
        }

    def copy(self) -> "MCPConfig":
        """Снимок конфига: словарь новый, сами серверы неизменяемы."""
        return MCPConfig(servers=dict(self.servers))

    def list_servers(self) -> list[dict[str, Any]]:
        """Список серверов для отображения."""
        return [
            {
                "name": name,
                "enabled": s.enabled,
                "command": " ".join([s.parameters.command, *s.parameters.args]),
                "disabled_tools": sorted(t for t, o in s.tool_options.items() if o.disabled),
            }
            for name, s in self.servers.items()
        ]


ConfigListener = Callable[[MCPConfig], None]


class MCPConfigStorage:
    """Хранилище конфигурации в JSON файле."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._listeners: list[ConfigListener] = []

    def load(self) -> MCPConfig:
        """Загружает конфигурацию."""
        if not self._path.exists():
            return MCPConfig()

        try:
            data = json.loads(self._path.read_text())
        except Exception as e:
            logger.error(f"Failed to load MCP config: {e}")
            return MCPConfig()

        servers = {}
        for name, server_data in data.get("servers", {}).items():
            # Один битый сервер не должен ронять весь конфиг
            try:
                servers[name] = MCPServerConfig(
                    id=name,
                    parameters=parse_server_parameters({
                        "command": server_data.get("command", ""),
                        "args": server_data.get("args", []),
                        "env": server_data.get("env", {}),
                    }),
                    enabled=server_data.get("enabled", True),
                    tool_options={
                        tool: MCPToolOption(
                            disabled=bool(opts.get("disabled", False)),
                            allow_auto_execution=bool(opts.get("allow_auto_execution", False)),
                        )
                        for tool, opts in server_data.get("tool_options", {}).items()
                    },
                )
            except MCPConfigurationError as e:
                logger.warning(f"Skipping MCP server {name}: {e}")

        return MCPConfig(servers=servers)

    def save(self, config: MCPConfig) -> None:
        """Сохраняет конфигурацию и уведомляет подписчиков."""
        data = {
            "servers": {
                name: {
                    **s.parameters.to_dict(),
                    "enabled": s.enabled,
                    "tool_options": {
                        tool: {
                            "disabled": o.disabled,
                            "allow_auto_execution": o.allow_auto_execution,
                        }
                        for tool, o in s.tool_options.items()
                    },
                }
                for name, s in config.servers.items()
            }
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2, ensure_ascii=False))
        logger.debug(f"Saved MCP config to {self._path}")

        snapshot = config.copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"MCP config listener failed: {e}")

    def on_change(self, listener: ConfigListener) -> Callable[[], None]:
        """
        Подписывает listener на сохранения конфига.

        Returns:
            Функция отписки
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


# Singleton
_storage: MCPConfigStorage | None = None
_config: MCPConfig | None = None


def get_config_storage() -> MCPConfigStorage:
    """Возвращает глобальное хранилище."""
    global _storage, _config
    if _storage is None:
        _storage = MCPConfigStorage(settings.servers_path)
        _config = _storage.load()
    return _storage


def get_mcp_config() -> MCPConfig:
    """Возвращает глобальную конфигурацию."""
    get_config_storage()
    return _config


def save_mcp_config() -> None:
    """Сохраняет глобальную конфигурацию."""
    if _storage and _config:
        _storage.save(_config)
