"""Shared configuration management for the invoice assistant.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-chat-assistant",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Generative model configuration
    model_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Model provider: openai (cloud API), ollama (self-hosted vision LLM)",
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="OpenAI model used for classification, extraction and duplicate checks",
    )
    openai_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for OpenAI calls",
    )

    # Ollama configuration (for model_provider="ollama")
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5vl:7b",
        description="Vision-capable Ollama model (e.g., qwen2.5vl:7b, llama3.2-vision:11b)",
    )
    ollama_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="HTTP timeout for Ollama requests",
    )

    # Persistence
    database_url: str = Field(
        default="sqlite:///./invoice_chat.db",
        description="SQLAlchemy database URL",
    )
    database_echo: bool = Field(
        default=False,
        description="Log emitted SQL statements",
    )

    # Prompt cache
    prompt_cache_enabled: bool = Field(
        default=True,
        description="Reuse model responses for byte-identical stage inputs",
    )
    prompt_cache_ttl_ms: int = Field(
        default=300_000,
        gt=0,
        description="Prompt cache entry lifetime in milliseconds",
    )

    # Reporting and validation
    usage_report_lookback_days: int = Field(
        default=90,
        gt=0,
        description="Window of token usage returned by the usage report",
    )
    max_document_pages: int = Field(
        default=20,
        gt=0,
        description="Maximum number of page images accepted per document",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
