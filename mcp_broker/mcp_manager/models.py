"""
Models — состояния серверов, инструменты и результаты вызовов.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_broker.mcp_manager.client import MCPClient
    from mcp_broker.mcp_manager.config import MCPServerConfig


class ServerStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class MCPTool:
    """Инструмент, как его описывает сервер."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    def with_name(self, name: str) -> MCPTool:
        return replace(self, name=name)


@dataclass(frozen=True, eq=False)
class ServerState:
    """
    Состояние одного сервера в реестре.

    Поля зависят от статуса:
    - CONNECTED: client и tools
    - ERROR: error
    - CONNECTING: attempt — id плейсхолдера для check-and-swap
    """
    name: str
    config: MCPServerConfig
    status: ServerStatus
    client: MCPClient | None = None
    tools: tuple[MCPTool, ...] = ()
    error: Exception | None = None
    attempt: int | None = None

    @classmethod
    def connecting(cls, config: MCPServerConfig, attempt: int) -> ServerState:
        return cls(name=config.id, config=config, status=ServerStatus.CONNECTING, attempt=attempt)

    @classmethod
    def disconnected(cls, config: MCPServerConfig) -> ServerState:
        return cls(name=config.id, config=config, status=ServerStatus.DISCONNECTED)

    @classmethod
    def connected(
        cls,
        config: MCPServerConfig,
        client: MCPClient,
        tools: list[MCPTool],
    ) -> ServerState:
        return cls(
            name=config.id,
            config=config,
            status=ServerStatus.CONNECTED,
            client=client,
            tools=tuple(tools),
        )

    @classmethod
    def errored(cls, config: MCPServerConfig, error: Exception) -> ServerState:
        return cls(name=config.id, config=config, status=ServerStatus.ERROR, error=error)

    @property
    def is_connected(self) -> bool:
        return self.status is ServerStatus.CONNECTED

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None


# Content: text поддерживается, остальные типы только распознаются

@dataclass(frozen=True)
class TextContent:
    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class OtherContent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)


ToolContent = TextContent | OtherContent


def content_from_dict(item: dict[str, Any]) -> ToolContent:
    """Конвертирует content блок протокола в TextContent/OtherContent."""
    content_type = item.get("type", "unknown")
    if content_type == "text":
        return TextContent(text=item.get("text", ""))
    return OtherContent(type=content_type, data=item)


@dataclass(frozen=True)
class ToolCallResult:
    """Сырой результат вызова от транспорта."""
    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallResult:
        return cls(
            content=[content_from_dict(item) for item in data.get("content", [])],
            is_error=bool(data.get("isError", data.get("is_error", False))),
        )


class ToolCallStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ToolCallResponse:
    """Нормализованный ответ на вызов инструмента."""
    status: ToolCallStatus
    data: TextContent | None = None
    error: str | None = None

    @classmethod
    def success(cls, text: str) -> ToolCallResponse:
        return cls(status=ToolCallStatus.SUCCESS, data=TextContent(text=text))

    @classmethod
    def failure(cls, error: str) -> ToolCallResponse:
        return cls(status=ToolCallStatus.ERROR, error=error)

    @classmethod
    def aborted(cls) -> ToolCallResponse:
        return cls(status=ToolCallStatus.ABORTED)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status.value}
        if self.data is not None:
            payload["data"] = self.data.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        return payload
