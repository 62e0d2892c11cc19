"""Configuration schemas for models and application defaults.

Loaded from models.toml and defaults.toml by chronoline.providers.registry.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ModelConfig(BaseModel):
    """Configuration for a single LLM model in the registry.

    Each entry provides the LiteLLM routing information and the
    environment variable holding the provider API key.
    """

    provider: str = Field(description="Provider identifier (e.g. 'groq', 'together_ai')")
    model: str = Field(description="LiteLLM model identifier")
    display_name: str = Field(description="Human-friendly model name for CLI output")
    api_key_env: str = Field(description="Environment variable name holding the API key")
    api_base: str = Field(default="", description="Custom API base URL (empty = provider default)")
    supports_prefill: bool = Field(
        default=True,
        description="Whether a trailing assistant message is continued rather than answered",
    )
    max_tokens: int = Field(default=2048, gt=0, description="Maximum tokens per generation")


class AppConfig(BaseModel):
    """Application defaults for the timeline service."""

    classifier_model: str = Field(
        description="Registry key of the fast model used to classify requests"
    )
    generator_model: str = Field(
        description="Registry key of the model that writes timelines and rejections"
    )
    system_prompt: str = Field(
        default="You are a helpful assistant.\n\n",
        description="System preamble appended to every session",
    )
    timeout: int = Field(default=120, gt=0, description="Per-generation timeout in seconds")
    max_retries: int = Field(default=3, ge=1, description="Attempts per backend call")
    host: str = Field(default="127.0.0.1", description="Bind address for `chronoline serve`")
    port: int = Field(default=8000, gt=0, description="Port for `chronoline serve`")
