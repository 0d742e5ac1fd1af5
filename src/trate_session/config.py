"""
Configuration management for trate-session

Uses pydantic-settings for environment variable parsing and validation.
API credentials live here and are handed to the LLM client constructor;
nothing else in the package reads them.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """You are a helpful, accurate and concise assistant.
Answer in the language the user writes in. If you are unsure, say so.
Use the conversation summary, when one is provided, as background for the
recent messages that follow it."""


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["openai", "anthropic", "openrouter"] = "openai"
    model: str = "gpt-4o"
    summary_model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 1024
    timeout: float = 60.0


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "TrateAI-Session"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    provider: Literal["openai", "anthropic", "openrouter"] = "openai"
    openai_api_key: str = Field(default="", description="OpenAI API key")
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Model settings
    default_model: str = Field(default="", description="Chat model, empty for the provider default")
    summary_model: str = Field(default="", description="Summarization model, empty for the provider default")
    max_tokens: int = 1024
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    request_timeout: float = Field(default=60.0, gt=0)

    # Conversation
    window_size: int = Field(default=6, ge=2, description="Max turns kept verbatim in context")
    summary_language: str = Field(default="English", description="Language of the rolling summary")
    summary_max_words: int = Field(default=150, ge=20, description="Upper bound on summary length")
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Storage
    state_dir: str = Field(default="~/.trate-session", description="Directory for persisted state")
    state_key: str = Field(default="chat_state_v1", description="Key of the stored session state")

    @field_validator("state_key")
    @classmethod
    def validate_state_key(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v or "\\" in v:
            raise ValueError("state_key must be a non-empty name without path separators")
        return v

    @property
    def state_path(self) -> Path:
        """Expanded state directory."""
        return Path(self.state_dir).expanduser()

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.provider

        api_key_map = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "openai": "gpt-4o",
            "anthropic": "claude-sonnet-4-20250514",
            "openrouter": "openai/gpt-4o",
        }

        summary_model_map = {
            "openai": "gpt-4o-mini",
            "anthropic": "claude-3-5-haiku-20241022",
            "openrouter": "openai/gpt-4o-mini",
        }

        base_url_map = {
            "openai": None,
            "anthropic": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        if provider not in model_map:
            raise ValueError(f"Unknown LLM provider: {provider}")

        return LLMConfig(
            provider=provider,  # type: ignore
            model=self.default_model or model_map[provider],
            summary_model=self.summary_model or summary_model_map[provider],
            api_key=api_key_map[provider],
            base_url=base_url_map[provider],
            max_tokens=self.max_tokens,
            timeout=self.request_timeout,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
