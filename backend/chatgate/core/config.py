from typing import Literal

from pydantic import HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATGATE_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "chatgate"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 9999
    VERBOSE: bool = False
    LOG_FORMAT: Literal["console", "json"] = "console"
    # None waits for every in-flight response before stopping
    GRACEFUL_SHUTDOWN_TIMEOUT: float | None = None

    # Protocol
    STREAMING_ENABLED: bool = True
    STREAM_CHUNK_DELAY_SECONDS: float = 0.05
    CORS_ALLOW_ORIGIN: str = "*"
    MODEL_ID: str = "chatgate-local"

    # Generation backend
    BACKEND: Literal["local", "openai"] = "local"
    INSTRUCTIONS: str = "You are a helpful assistant"
    UPSTREAM_BASE_URL: str | None = None
    UPSTREAM_API_KEY: str | None = None
    UPSTREAM_MODEL: str | None = None
    UPSTREAM_TIMEOUT_SECONDS: float = 60.0
    CB_FAIL_MAX: int = 5
    CB_RESET_TIMEOUT: int = 30

    SENTRY_DSN: HttpUrl | None = None


settings = Settings()  # type: ignore
