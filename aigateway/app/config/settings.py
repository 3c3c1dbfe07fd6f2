"""
Application settings using Pydantic Settings.

Loads configuration from environment variables and .env file.

Boot-time fields (timeouts, limits, framework) are read once. Provider keys,
base URLs and default models are runtime-tunable: they are copied into a
frozen ``RuntimeConfig`` that can be reloaded without restarting, and every
stream session captures a ``ConfigSnapshot`` when it starts.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_PROVIDERS = ("openai", "anthropic", "local")


class Settings(BaseSettings):
    """Application settings with validation and defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Server bind address")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="", description="Optional log file path")
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated CORS origins",
    )

    # Identity
    identity_mode: str = Field(
        default="anonymous", description="Caller identity mode (anonymous|bearer)"
    )
    jwt_secret: str = Field(
        default="INSECURE_DEFAULT_CHANGE_ME", description="Secret for bearer tokens"
    )
    admin_token: str = Field(default="", description="Token for admin endpoints")
    trusted_proxies: str = Field(
        default="",
        description="Comma-separated proxy addresses whose X-Forwarded-For / X-Real-IP headers are trusted",
    )

    # Streaming limits
    stream_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Absolute stream duration limit"
    )
    idle_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Max seconds without a chunk before a stream stalls"
    )
    max_response_bytes: int = Field(
        default=1048576, ge=1, description="Max streamed response bytes (default 1MB)"
    )
    max_context_html_chars: int = Field(
        default=12000, ge=0, description="Cap on existing HTML injected in element mode"
    )
    session_history_size: int = Field(
        default=200, ge=0, description="Terminal session records kept in memory"
    )

    # Rate limiting
    rate_limit_requests: int = Field(default=30, ge=1, description="Requests per window")
    rate_limit_window_seconds: float = Field(
        default=60.0, gt=0, description="Rate limit window in seconds"
    )

    # Generation
    css_framework: str = Field(
        default="tailwind", description="CSS framework for generated markup (tailwind|bootstrap|none)"
    )
    default_connection_mode: str = Field(
        default="server", description="Connection mode when request does not ask (server|direct)"
    )
    allow_direct_mode: bool = Field(
        default=False, description="Allow callers to connect to providers directly"
    )

    # Uploads and assets
    max_upload_bytes: int = Field(
        default=5242880, ge=1024, description="Max screenshot upload size (default 5MB)"
    )
    asset_dir: str = Field(default="./data/assets", description="Local asset store directory")

    # Providers - General
    providers_enabled: str = Field(
        default="openai,anthropic,local",
        description="Comma-separated providers to enable (openai,anthropic,local)",
    )
    provider_timeout_seconds: float = Field(
        default=30.0, ge=1, le=300, description="Provider read timeout"
    )
    sync_retry_backoff_seconds: float = Field(
        default=0.5, ge=0, description="Backoff before retrying a failed model listing"
    )
    sync_models_on_startup: bool = Field(
        default=False, description="Run a model sync when the app starts"
    )
    direct_providers: str = Field(
        default="", description="Comma-separated providers that may be used in direct mode"
    )

    # Default models (provider/model or bare model id)
    default_text_model: str = Field(default="", description="Default text model")
    default_image_model: str = Field(default="", description="Default image model")
    default_vision_model: str = Field(default="", description="Default vision model")

    # Providers - OpenAI
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", description="OpenAI API base URL"
    )
    openai_api_key: str = Field(default="", description="OpenAI API key")

    # Providers - Anthropic
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1", description="Anthropic API base URL"
    )
    anthropic_api_key: str = Field(default="", description="Anthropic API key")

    # Providers - Local OpenAI compatible (LM Studio, Ollama, vLLM)
    local_base_url: str = Field(default="", description="Local OpenAI-compatible base URL")
    local_api_key: str = Field(
        default="none", description="Local provider key ('none' when no key is required)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return upper

    @field_validator("css_framework")
    @classmethod
    def validate_css_framework(cls, v: str) -> str:
        valid = {"tailwind", "bootstrap", "none"}
        lower = v.lower()
        if lower not in valid:
            raise ValueError(f"css_framework must be one of {valid}")
        return lower

    @field_validator("default_connection_mode")
    @classmethod
    def validate_connection_mode(cls, v: str) -> str:
        valid = {"server", "direct"}
        lower = v.lower()
        if lower not in valid:
            raise ValueError(f"default_connection_mode must be one of {valid}")
        return lower

    @field_validator("identity_mode")
    @classmethod
    def validate_identity_mode(cls, v: str) -> str:
        valid = {"anonymous", "bearer"}
        lower = v.lower()
        if lower not in valid:
            raise ValueError(f"identity_mode must be one of {valid}")
        return lower

    @property
    def enabled_providers(self) -> list[str]:
        """Parse enabled providers from comma-separated string."""
        parsed = []
        for provider in self.providers_enabled.split(","):
            provider_id = provider.strip().lower()
            if provider_id in KNOWN_PROVIDERS and provider_id not in parsed:
                parsed.append(provider_id)
        return parsed

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def trusted_proxies_list(self) -> list[str]:
        return [p.strip() for p in self.trusted_proxies.split(",") if p.strip()]


@dataclass(frozen=True)
class ProviderEndpoint:
    provider_id: str
    kind: str
    base_url: str
    api_key: str | None


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime-tunable provider configuration, replaced wholesale on reload."""

    endpoints: tuple[ProviderEndpoint, ...]
    default_text_model: str
    default_image_model: str
    default_vision_model: str
    direct_providers: frozenset[str]

    def default_model(self, capability: str) -> str:
        return {
            "text": self.default_text_model,
            "image": self.default_image_model,
            "vision": self.default_vision_model,
        }.get(capability, "")


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of everything a stream session reads from config."""

    stream_timeout_seconds: float
    idle_timeout_seconds: float
    max_response_bytes: int
    max_context_html_chars: int
    css_framework: Literal["tailwind", "bootstrap", "none"]
    default_connection_mode: Literal["server", "direct"]
    allow_direct_mode: bool
    runtime: RuntimeConfig


def build_runtime_config(source: Settings) -> RuntimeConfig:
    endpoints = []
    for provider_id in source.enabled_providers:
        if provider_id == "openai":
            endpoints.append(
                ProviderEndpoint("openai", "openai_compat", source.openai_base_url, source.openai_api_key or None)
            )
        elif provider_id == "anthropic":
            endpoints.append(
                ProviderEndpoint("anthropic", "anthropic", source.anthropic_base_url, source.anthropic_api_key or None)
            )
        elif provider_id == "local" and source.local_base_url:
            # Skip incomplete configuration
            endpoints.append(
                ProviderEndpoint("local", "openai_compat", source.local_base_url, source.local_api_key or None)
            )
    direct = frozenset(p.strip().lower() for p in source.direct_providers.split(",") if p.strip())
    return RuntimeConfig(
        endpoints=tuple(endpoints),
        default_text_model=source.default_text_model.strip(),
        default_image_model=source.default_image_model.strip(),
        default_vision_model=source.default_vision_model.strip(),
        direct_providers=direct,
    )


class RuntimeConfigStore:
    """Holds the current RuntimeConfig; ``reload`` swaps it atomically."""

    def __init__(self, source: Settings):
        self._settings = source
        self._current = build_runtime_config(source)

    @property
    def current(self) -> RuntimeConfig:
        return self._current

    def reload(self) -> RuntimeConfig:
        """Re-read runtime-tunable fields from the environment."""
        fresh = Settings()
        for field in (
            "providers_enabled",
            "openai_base_url",
            "openai_api_key",
            "anthropic_base_url",
            "anthropic_api_key",
            "local_base_url",
            "local_api_key",
            "default_text_model",
            "default_image_model",
            "default_vision_model",
            "direct_providers",
        ):
            setattr(self._settings, field, getattr(fresh, field))
        self._current = build_runtime_config(self._settings)
        return self._current

    def snapshot(self) -> ConfigSnapshot:
        s = self._settings
        return ConfigSnapshot(
            stream_timeout_seconds=s.stream_timeout_seconds,
            idle_timeout_seconds=s.idle_timeout_seconds,
            max_response_bytes=s.max_response_bytes,
            max_context_html_chars=s.max_context_html_chars,
            css_framework=s.css_framework,
            default_connection_mode=s.default_connection_mode,
            allow_direct_mode=s.allow_direct_mode,
            runtime=self._current,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
runtime_config = RuntimeConfigStore(settings)


def reload_runtime_config() -> RuntimeConfig:
    """Re-read provider keys, base URLs and default models; boot-time fields are untouched."""
    return runtime_config.reload()
