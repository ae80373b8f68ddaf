import os
import sys
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

CONFIG_PATH = "config/config.yaml"
DEFAULT_BASE_URL = "http://127.0.0.1:8317"
DEFAULT_MODEL = "gemini-3-pro-image-preview"
DEFAULT_SIZE = "1024x1024"

MODE_ALIASES = {"openai": "images", "gemini": "native"}


def _default_data_dir() -> Path:
    return Path.home() / ".gemini-images"


class ServerConfig(BaseModel):
    """Server configuration"""

    host: str = Field(default="0.0.0.0", description="Server host address")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port number")
    api_key: str | None = Field(
        default=None,
        description="API key for authentication, if set, will enable API key validation",
    )


class CORSConfig(BaseModel):
    """CORS configuration"""

    enabled: bool = Field(default=True, description="Enable CORS support")
    allow_origins: list[str] = Field(
        default=["*"], description="List of allowed origins for CORS requests"
    )
    allow_credentials: bool = Field(default=True, description="Allow credentials in CORS requests")
    allow_methods: list[str] = Field(
        default=["*"], description="List of allowed HTTP methods for CORS requests"
    )
    allow_headers: list[str] = Field(
        default=["*"], description="List of allowed headers for CORS requests"
    )


class UpstreamConfig(BaseModel):
    """Upstream image endpoint configuration"""

    base_url: str = Field(default=DEFAULT_BASE_URL, description="Base URL of the upstream endpoint")
    api_key: str | None = Field(
        default=None, description="Bearer token forwarded to the upstream endpoint"
    )
    model: str = Field(default=DEFAULT_MODEL, description="Model used for image generation")
    mode: Literal["auto", "images", "native", "chat"] = Field(
        default="auto",
        description="Protocol to use: 'auto' tries images -> native -> chat, others pin one protocol",
    )
    timeout: float = Field(
        default=120, ge=5, le=600, description="Timeout in seconds for each upstream call"
    )
    default_size: str = Field(default=DEFAULT_SIZE, description="Default image size as WxH")

    @field_validator("api_key", mode="before")
    @classmethod
    def _blank_api_key_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return MODE_ALIASES.get(v, v)
        return v


class SessionConfig(BaseModel):
    """Session storage configuration"""

    ttl: float = Field(
        default=7 * 24 * 60 * 60,
        gt=0,
        description="Seconds a session may stay unused before it expires",
    )
    max_history_turns: int = Field(
        default=10,
        ge=1,
        description="Conversation turns kept per session (messages are capped at twice this)",
    )
    persist: bool = Field(default=True, description="Mirror sessions to disk")
    storage_dir: Path = Field(
        default_factory=lambda: _default_data_dir() / "sessions",
        description="Directory holding one JSON record per session",
    )
    images_dir: Path = Field(
        default_factory=lambda: _default_data_dir() / "images",
        description="Directory holding session image blobs",
    )
    cleanup_interval: float = Field(
        default=60 * 60, ge=1, description="Seconds between expiration sweeps"
    )

    @property
    def max_messages(self) -> int:
        return self.max_history_turns * 2


class LoggingConfig(BaseModel):
    """Logging configuration"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


class Config(BaseSettings):
    """Application configuration"""

    # Server configuration
    server: ServerConfig = Field(
        default=ServerConfig(),
        description="Server configuration, including host, port, and API key",
    )

    # CORS configuration
    cors: CORSConfig = Field(
        default=CORSConfig(),
        description="CORS configuration, allows cross-origin requests",
    )

    upstream: UpstreamConfig = Field(
        default=UpstreamConfig(),
        description="Upstream endpoint configuration",
    )

    session: SessionConfig = Field(
        default_factory=SessionConfig,
        description="Session configuration, defines expiry, history cap and storage",
    )

    # Logging configuration
    logging: LoggingConfig = Field(
        default=LoggingConfig(),
        description="Logging configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="CONFIG_",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        yaml_file=os.getenv("CONFIG_PATH", CONFIG_PATH),
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Read settings: init -> env -> yaml -> default"""
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Environment variables understood by the original Node tool, mapped to config fields.
LEGACY_ENV: dict[str, tuple[str, str]] = {
    "OPENAI_BASE_URL": ("upstream", "base_url"),
    "OPENAI_API_KEY": ("upstream", "api_key"),
    "GEMINI_API_KEY": ("upstream", "api_key"),
    "OPENAI_MODEL": ("upstream", "model"),
    "OPENAI_IMAGE_MODE": ("upstream", "mode"),
    "OPENAI_IMAGE_SIZE": ("upstream", "default_size"),
    "OPENAI_TIMEOUT_MS": ("upstream", "timeout"),
    "SESSION_TTL_MS": ("session", "ttl"),
    "SESSION_PERSIST": ("session", "persist"),
    "SESSION_STORAGE_DIR": ("session", "storage_dir"),
    "SESSION_IMAGES_DIR": ("session", "images_dir"),
}

_MS_FIELDS = {"OPENAI_TIMEOUT_MS", "SESSION_TTL_MS"}


def extract_legacy_env(environ: dict[str, str] | None = None) -> dict[str, dict[str, Any]]:
    """Collect legacy variables into a section -> field mapping. The first spelling found wins."""
    environ = os.environ if environ is None else environ
    overrides: dict[str, dict[str, Any]] = {}
    for name, (section, field) in LEGACY_ENV.items():
        raw = environ.get(name)
        if raw is None or not raw.strip():
            continue
        if field in overrides.get(section, {}):
            continue
        value: Any = raw.strip()
        if name in _MS_FIELDS:
            try:
                value = int(value) / 1000
            except ValueError:
                logger.warning(f"Ignoring {name}={raw!r}: not an integer")
                continue
            if name == "OPENAI_TIMEOUT_MS":
                value = max(5.0, min(600.0, value))
        elif name == "SESSION_PERSIST":
            value = value != "0"
        overrides.setdefault(section, {})[field] = value
    return overrides


def _merge_section(section: BaseModel, overrides: dict[str, Any]) -> BaseModel:
    """Apply overrides to one config section, keeping explicitly configured values.

    Partial updates merge the defaults back in, so a field only counts as configured
    when it was set and differs from its default.
    """
    if not overrides:
        return section
    section_dict = section.model_dump()
    fields = type(section).model_fields
    explicit = {
        name
        for name in section.model_fields_set
        if getattr(section, name) != fields[name].get_default(call_default_factory=True)
    }
    for field, value in overrides.items():
        if field not in explicit:
            section_dict[field] = value
    return type(section)(**section_dict)


def initialize_config() -> Config:
    """
    Initialize the configuration.

    Returns:
        Config: Configuration object
    """
    try:
        config = Config()  # type: ignore

        # Legacy variables only fill in what neither env nor yaml set
        legacy = extract_legacy_env()
        if "upstream" in legacy:
            config.upstream = _merge_section(config.upstream, legacy["upstream"])
        if "session" in legacy:
            config.session = _merge_section(config.session, legacy["session"])

        return config
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e!s}")
        sys.exit(1)
