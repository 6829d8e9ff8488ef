"""
Configuration management for turngraph

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .context.governor import CompressionConfig
    from .tools.policy import ToolFilterConfig


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic", "openai", "openrouter"] = "openai"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "turngraph"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    llm_base_url: str | None = Field(default=None, description="Override the provider base URL")

    # Default model settings
    default_provider: Literal["anthropic", "openai", "openrouter"] = "openai"
    default_model: str = ""
    max_tokens: int = Field(default=4096, description="Output tokens per model call")
    temperature: float = 0.7
    max_context_tokens: int = Field(default=128_000, description="Context window budget")

    # Compression
    compression_enabled: bool = True
    compression_threshold: float = Field(default=0.8, description="Usage ratio that triggers compression")
    compression_max_count: int = Field(default=5, description="Max accumulated summaries")
    compression_max_tokens: int = Field(default=300, description="Max tokens per summary")
    compression_model: str = Field(default="", description="Model used for summaries")
    compression_persist: bool = True
    compression_store: Literal["json", "sql"] = "json"
    compression_dir: str = Field(default=".turngraph/compressions", description="JSON store directory")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./.turngraph/turngraph.db",
        description="Database connection URL for the SQL compression store",
    )

    # Engine
    max_turn_steps: int = Field(default=60, description="Model calls allowed per turn")

    # Tool filtering
    agent_mode: Literal["autonomous", "interactive"] = "interactive"
    mcp_tools_enabled: bool = True
    excluded_tools: str = Field(default="", description="Comma-separated tool names to hide")

    @field_validator("compression_threshold")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("compression_threshold must be in (0, 1]")
        return v

    @field_validator("compression_max_count")
    @classmethod
    def check_max_count(cls, v: int) -> int:
        if v < 2:
            raise ValueError("compression_max_count must be at least 2")
        return v

    @field_validator("excluded_tools", mode="before")
    @classmethod
    def parse_excluded_tools(cls, v: str) -> str:
        return v.strip() if v else ""

    @property
    def excluded_tools_list(self) -> list[str]:
        """Get list of excluded tool names."""
        if not self.excluded_tools:
            return []
        return [t.strip() for t in self.excluded_tools.split(",") if t.strip()]

    def get_llm_config(self, provider: str | None = None, model: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o-mini",
            "openrouter": "openai/gpt-4o-mini",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model or self.default_model or model_map.get(provider, "gpt-4o-mini"),
            api_key=api_key_map.get(provider, ""),
            base_url=self.llm_base_url or base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    def get_compression_config(self) -> "CompressionConfig":
        """Build the context governor configuration."""
        from .context.governor import CompressionConfig

        return CompressionConfig(
            enabled=self.compression_enabled,
            threshold=self.compression_threshold,
            max_count=self.compression_max_count,
            max_summary_tokens=self.compression_max_tokens,
            max_context_tokens=self.max_context_tokens,
            persist=self.compression_persist,
        )

    def get_tool_filter_config(self) -> "ToolFilterConfig":
        """Build the environment-level tool filter."""
        from .tools.policy import ToolFilterConfig

        return ToolFilterConfig(
            mode=self.agent_mode,
            mcp_tools_enabled=self.mcp_tools_enabled,
            excluded_tools=frozenset(self.excluded_tools_list),
        )

    @property
    def compression_path(self) -> Path:
        """Directory of the JSON compression store."""
        return Path(self.compression_dir).expanduser()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
