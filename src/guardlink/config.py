"""Application configuration via environment variables and .env file."""

from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

INTERPRETER_MODES = ("keyword", "openai", "none")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "GUARDLINK_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/guardlink.db")

    # Logging
    log_level: str = "info"

    # Command lifecycle
    ack_timeout: int = 30  # seconds before an unacknowledged command expires
    offline_threshold: int = 90  # seconds without heartbeat before "offline"
    sweep_interval: int = 5  # seconds between expiry/offline sweeps
    storage_retry_attempts: int = 3

    # Observers
    observer_buffer_limit: int = 100  # queued events before a slow observer is dropped
    observer_send_timeout: float = 5.0

    # Text command interpreter
    interpreter_mode: str = "keyword"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"
    min_confidence: float = 0.7

    # Alerts
    # Env: GUARDLINK_WEBHOOK_URLS="https://a.example/hook,https://b.example/hook"
    webhook_urls: Annotated[list[str], NoDecode] = []

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("webhook_urls", mode="before")
    @classmethod
    def parse_webhook_urls(cls, v: object) -> list[str]:
        """Parse comma-separated string or list."""
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        if isinstance(v, list):
            return [s for s in v if s]
        return []

    @field_validator("interpreter_mode")
    @classmethod
    def check_interpreter_mode(cls, v: str) -> str:
        mode = v.strip().lower()
        if mode not in INTERPRETER_MODES:
            raise ValueError(f"interpreter_mode must be one of {', '.join(INTERPRETER_MODES)}")
        return mode


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
