"""
Application configuration using Pydantic Settings.
Centralizes all configuration with type safety, validation, and environment variable support.
"""

import json
import warnings
from pathlib import Path
from typing import Annotated, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Environment variables can be set in .env file or system environment.
    Telegram, OpenAI and vault settings are required; everything else has a default.
    """

    # ========== Telegram ==========
    telegram_bot_token: str = Field(
        ...,
        min_length=1,
        description="Bot token issued by @BotFather"
    )
    allowed_user_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Telegram user ids allowed to use the bot (comma-separated in env var, empty = everyone)"
    )
    server_url: str = Field(
        ...,
        min_length=1,
        description="Public webhook URL, must end with the bot token"
    )
    webhook_secret_token: Optional[str] = Field(
        default=None,
        description="Secret echoed by Telegram in X-Telegram-Bot-Api-Secret-Token"
    )
    notify_on_success: bool = Field(
        default=False,
        description="Reply to the user after a note was committed and pushed"
    )

    # ========== OpenAI ==========
    openai_api_key: str = Field(
        ...,
        min_length=1,
        description="OpenAI API key used for title and hashtag generation"
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Chat completion model used for metadata generation"
    )
    metadata_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts for metadata generation before falling back"
    )
    metadata_retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Base delay in seconds, doubled after each failed attempt"
    )

    # ========== Obsidian Vault ==========
    obsidian_vault_path: Path = Field(
        ...,
        description="Path to the Obsidian vault (a git working copy)"
    )
    notes_folder_name: str = Field(
        default="Inbox",
        min_length=1,
        description="Folder inside the vault where notes are written"
    )
    assets_folder_name: str = Field(
        default="assets",
        min_length=1,
        description="Folder inside the vault where attachments are written"
    )

    # ========== Git ==========
    git_pull_interval_ms: int = Field(
        default=300000,
        ge=0,
        description="Interval between periodic pulls in milliseconds (0 disables)"
    )
    git_initial_pull_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay before the first pull after startup"
    )
    git_command_timeout: int = Field(
        default=120,
        ge=5,
        le=3600,
        description="Timeout in seconds for a single git subprocess"
    )

    # ========== Server ==========
    port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="Port to run the webhook server on"
    )
    log_level: str = Field(
        default="info",
        description="Log level (debug, info, warning, error)"
    )
    shutdown_grace_seconds: float = Field(
        default=10.0,
        ge=0.0,
        le=300.0,
        description="Seconds to wait on SIGTERM/SIGINT before forcing exit"
    )

    # ========== Pydantic Configuration ==========
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra fields in .env
    )

    @field_validator("obsidian_vault_path")
    @classmethod
    def validate_paths(cls, v: Path) -> Path:
        """Ensure paths are Path objects"""
        if isinstance(v, str):
            return Path(v)
        return v

    @field_validator("allowed_user_ids", mode="before")
    @classmethod
    def parse_allowed_user_ids(cls, v) -> list[str]:
        """Parse allowed_user_ids - accepts JSON array or comma-separated string"""
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [str(item).strip() for item in v if str(item).strip()]
        if isinstance(v, int):
            return [str(v)]
        if isinstance(v, str):
            v_stripped = v.strip()
            if v_stripped.startswith('['):
                try:
                    return [str(item) for item in json.loads(v_stripped)]
                except json.JSONDecodeError:
                    pass
            return [user_id.strip() for user_id in v.split(",") if user_id.strip()]
        return []

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().lower()
        if level not in ("debug", "info", "warning", "error", "critical"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("openai_api_key")
    @classmethod
    def validate_openai_key(cls, v: str) -> str:
        """Warn if the key does not look like an OpenAI key"""
        if not v.startswith("sk-"):
            warnings.warn(
                "OPENAI_API_KEY does not look like a standard OpenAI key (should start with 'sk-').",
                UserWarning
            )
        return v

    @model_validator(mode="after")
    def validate_server_url(self) -> "Settings":
        """The webhook path carries the bot token, so SERVER_URL must end with it"""
        if not self.server_url.startswith(("https://", "http://")):
            warnings.warn(
                f"SERVER_URL ({self.server_url}) does not start with http:// or https://. "
                "Webhook setup might fail.",
                UserWarning
            )
        if not self.server_url.endswith(self.telegram_bot_token):
            raise ValueError(
                "SERVER_URL must end with the bot token "
                "(e.g. https://your.domain/webhook/<TELEGRAM_BOT_TOKEN>)"
            )
        return self

    @property
    def notes_path(self) -> Path:
        return self.obsidian_vault_path / self.notes_folder_name

    @property
    def assets_path(self) -> Path:
        return self.obsidian_vault_path / self.assets_folder_name

    @property
    def git_pull_interval_seconds(self) -> float:
        return self.git_pull_interval_ms / 1000

    def is_user_allowed(self, user_id: Optional[int]) -> bool:
        """An empty allow-list lets everybody in."""
        if not self.allowed_user_ids:
            return True
        return user_id is not None and str(user_id) in self.allowed_user_ids

    def ensure_directories(self) -> None:
        """
        Ensure all required directories exist.
        Call this at application startup.

        Raises:
            FileNotFoundError: If the vault itself does not exist
            NotADirectoryError: If the vault path is not a directory
        """
        vault = self.obsidian_vault_path
        if not vault.exists():
            raise FileNotFoundError(f"Obsidian vault path not found: {vault}")
        if not vault.is_dir():
            raise NotADirectoryError(f"Obsidian vault path is not a directory: {vault}")
        self.notes_path.mkdir(parents=True, exist_ok=True)
        self.assets_path.mkdir(parents=True, exist_ok=True)


# Global settings instance, created on first use so that importing this
# module does not require the environment to be populated
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    This function exists for:
    1. Dependency injection in tests
    2. Deferring environment validation until the app actually starts

    Returns:
        Global settings instance

    Raises:
        pydantic.ValidationError: If required configuration is missing
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached instance (tests reload settings after changing env vars)."""
    global _settings
    _settings = None
