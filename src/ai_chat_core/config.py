"""Application configuration with environment variable support."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings with environment variable support.

    Priority: ENV > .env.local > .env > defaults
    .env.local is gitignored for local overrides

    There is no module-level instance: build one and pass it to
    ChatInstance (or let ChatInstance build the defaults).
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_prefix="AI_CHAT_",
        case_sensitive=True,
        extra="ignore",
    )

    # Service configuration
    PROJECT_NAME: str = "AI Chat Core"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Content used for synthetic messages
    ERROR_MESSAGE_TEXT: str = "There was an error getting a response. Please try again."
    SYNTHETIC_ITEM_ID_PREFIX: str = "item-"

    # Storage
    HISTORY_DB_PATH: str = ".ai-chat/history.db"

    # Anthropic backend
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"
    ANTHROPIC_MAX_TOKENS: int = 4096

    # Scripted backend / replay
    REPLAY_DELAY_SECONDS: float = 0.0
