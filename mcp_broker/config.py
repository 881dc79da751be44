from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MCP_BROKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    data_dir: Path = Path("data")

    # False: каталог пуст, вызовы отклоняются
    tool_execution_enabled: bool = True

    # Окружение подпроцессов
    inherit_shell_env: bool = True
    shell_env_timeout: float = 5.0

    # Таймаут запуска + handshake одного сервера (секунды)
    connect_timeout: float = 30.0

    # Сколько разговоров помнит allowlist
    allowlist_max_conversations: int = 256

    log_level: str = "INFO"

    @property
    def servers_path(self) -> Path:
        return self.data_dir / "mcp_servers.json"


settings = Settings()
