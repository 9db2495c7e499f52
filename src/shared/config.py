"""Configuration management for the Assistant Gateway.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """Default provider configuration used when a request names none."""
    provider: str = Field(default="openai", description="Provider name: openai, azure_openai, groq, mistral, gemini, mock")
    model: Optional[str] = Field(default=None, description="Model name; defaults to the provider's first model")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="Alternate API base URL")
    api_version: Optional[str] = Field(default="2024-02-15-preview", description="API version (Azure)")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class KeystoreSettings(BaseSettings):
    """Encrypted secret store configuration."""
    path: str = Field(default="data/api-keys.json")
    passphrase: Optional[str] = Field(default=None, description="Passphrase the store key is derived from")
    kdf_iterations: int = Field(default=390_000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="KEYSTORE_",
        env_file=".env",
        extra="ignore"
    )


class PluginSettings(BaseSettings):
    """Capability bundle discovery configuration."""
    package: str = Field(default="plugins", description="Package scanned for plugin modules")
    enabled: list[str] = Field(default_factory=list, description="If set, only these plugins load")
    disabled: list[str] = Field(default_factory=list)
    tool_timeout_seconds: Optional[float] = Field(default=30.0, gt=0)
    enable_audit: bool = Field(default=False)
    audit_log_path: str = Field(default="logs/tool-audit.log")

    model_config = SettingsConfigDict(
        env_prefix="PLUGINS_",
        env_file=".env",
        extra="ignore"
    )


class OrchestratorSettings(BaseSettings):
    """Orchestrator and HTTP surface configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    provider_timeout_seconds: Optional[float] = Field(default=120.0, gt=0)
    system_prompt: Optional[str] = Field(default=None, description="Overrides the built-in preamble")

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    keystore: KeystoreSettings = Field(default_factory=KeystoreSettings)
    plugins: PluginSettings = Field(default_factory=PluginSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("GATEWAY_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
