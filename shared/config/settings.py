"""Application configuration powered by ``pydantic-settings``."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OpenAISettings(BaseSettings):
    """Configuration for the OpenAI compatible chat-completions API."""

    api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    organization: Optional[str] = Field(default=None, description="OpenAI organization identifier")
    project: Optional[str] = Field(default=None, description="OpenAI project identifier")
    base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the chat-completions API",
    )

    model_config = SettingsConfigDict(env_prefix="OPENAI_", env_file=".env", extra="ignore")


class AIChatSettings(BaseSettings):
    """Runtime limits and defaults for the AI chat orchestrator."""

    model: str = Field(default="gpt-4o-mini", description="Completion model identifier")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    upstream_timeout: float = Field(
        default=8.0,
        gt=0.0,
        description="Seconds allowed for the upstream completion call to start responding",
    )
    stall_timeout: float = Field(
        default=15.0,
        gt=0.0,
        description="Seconds allowed between two reads of the upstream stream",
    )
    max_messages: int = Field(default=40, ge=1)
    max_message_length: int = Field(default=2000, ge=1)
    max_total_length: int = Field(default=12000, ge=1)
    practice_cache_ttl: float = Field(
        default=600.0,
        ge=0.0,
        description="Seconds a practice-details payload stays cached",
    )
    metadata_write_attempts: int = Field(
        default=2,
        ge=1,
        description="Attempts for writing merged intake state onto conversation metadata",
    )
    metadata_retry_wait: float = Field(
        default=0.1,
        ge=0.0,
        description="Seconds to wait before retrying a conversation metadata write",
    )
    shutdown_grace: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds detached streaming jobs may keep running on shutdown",
    )
    backend_url: str = Field(
        default="http://localhost:8787",
        description="Base URL of the backend serving sessions and practice details",
    )
    http_timeout: float = Field(
        default=10.0,
        ge=1.0,
        description="Timeout in seconds for outbound backend requests",
    )

    model_config = SettingsConfigDict(env_prefix="AI_CHAT_", env_file=".env", extra="ignore")


class Settings(BaseSettings):
    """Top-level application settings namespace."""

    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    ai_chat: AIChatSettings = Field(default_factory=AIChatSettings)

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance for application use."""

    return Settings()


__all__ = [
    "AIChatSettings",
    "OpenAISettings",
    "Settings",
    "get_settings",
]
