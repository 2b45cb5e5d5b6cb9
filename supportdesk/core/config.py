from __future__ import annotations

from pydantic import AliasChoices, Field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    LOG_LEVEL: str = "INFO"

    GRAPHQL_URL: str = Field(
        default="",
        validation_alias=AliasChoices("GRAPHQL_URL", "APPSYNC_GRAPHQL_URL"),
    )
    REQUEST_TIMEOUT_SEC: float = 20.0

    TICKET_CACHE_TTL_SEC: float = 300.0
    LIST_PAGE_SIZE: int = 20
    PRELOAD_TOP_N: int = 3

    TITLE_MAX_CHARS: int = 100
    MESSAGE_MAX_CHARS: int = 1000


settings = Settings()
