"""Application settings loaded from environment variables."""

import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """chatsync configuration. All values come from environment variables."""

    # Remote message store
    api_base_url: str = Field(default="http://127.0.0.1:8000")
    api_token: str = Field(default="")
    provider_name: str = Field(default="ChatGPT")
    persist_timeout_seconds: float = Field(default=20.0)

    # Reconciliation
    pending_retention_seconds: int = Field(default=300)
    title_max_length: int = Field(default=50)
    conversation_path_prefix: str = Field(default="/c/")

    # Messages sent without a conversation id while a conversation is open are
    # attached to it after the event. Off keeps them pending until an id arrives.
    adopt_current_conversation: bool = Field(default=True)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def pending_retention_ms(self) -> int:
        """Pending-buffer retention window in milliseconds."""
        return self.pending_retention_seconds * 1000

    def get_api_url(self, path: str) -> str:
        """Join *path* onto API_BASE_URL without doubling slashes."""
        return f"{self.api_base_url.rstrip('/')}/{path.lstrip('/')}"


settings = Settings()
