from typing import List

from pydantic import AnyUrl
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    REDIS_URL: AnyUrl = "redis://localhost:6379/0"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    MESSAGE_BROADCAST_CHANNEL: str = "message-broadcast"
    MESSAGE_COMMAND_CHANNEL: str = "message-command"
    TYPING_BROADCAST_CHANNEL: str = "typing-broadcast"
    TYPING_COMMAND_CHANNEL: str = "typing-command"

    CONNECT_TIMEOUT_MS: int = 10000
    TYPING_DEBOUNCE_MS: int = 500
    TYPING_TIMEOUT_MS: int = 3000
    # remote entries outlive the sender's own auto-stop by this much
    TYPING_GRACE_MS: int = 2000

    HISTORY_MAX: int = 200
    HISTORY_KEEP: int = 150

    USERNAME_MIN_LENGTH: int = 3
    USERNAME_MAX_LENGTH: int = 20
    USERNAME_PATTERN: str = r"^[a-zA-Z0-9áéíóúÁÉÍÓÚñÑ_\-\s]+$"

    DEFAULT_COLOR: str = "#000000"
    COLOR_PALETTE: List[str] = [
        "#FF5733",
        "#33FF57",
        "#3357FF",
        "#FF33F5",
        "#33FFF5",
        "#FFD700",
        "#FF6B35",
        "#9B59B6",
        "#1ABC9C",
        "#E74C3C",
    ]

    class Config:
        env_file = ".env"


settings = Settings()
