"""Configuration management for qcli."""

import json
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

APP_DIR_NAME = "q-cli"


def get_config_dir() -> Path:
    """Return the per-user config directory (XDG aware)."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home) / APP_DIR_NAME
    return Path.home() / ".config" / APP_DIR_NAME


def get_config_path() -> Path:
    """Return the path of the JSON user config file."""
    return get_config_dir() / "config.json"


def load_user_config() -> dict[str, Any]:
    """
    Read the JSON user config file.

    Returns:
        The parsed mapping, or an empty dict when the file is missing or unreadable.
    """
    path = get_config_path()
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return data


def save_user_config(**values: Any) -> Path:
    """
    Merge values into the JSON user config file.

    Args:
        **values: Settings field names and their new values.

    Returns:
        Path of the written file.
    """
    path = get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    merged = {**load_user_config(), **values}
    path.write_text(json.dumps(merged, indent=2), encoding="utf-8")
    os.chmod(path, 0o600)
    logger.info(f"Saved config to {path}")
    return path


def is_cache_configured() -> bool:
    """Whether the user has made an explicit cache on/off choice (first-run detection)."""
    return "cache_enabled" in load_user_config()


class UserConfigSource(PydanticBaseSettingsSource):
    """Settings source backed by the JSON user config file."""

    def __init__(self, settings_cls: type[BaseSettings]):
        super().__init__(settings_cls)
        self._data = load_user_config()

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in self._data.items()
            if name in self.settings_cls.model_fields and value is not None
        }


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="Q_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Cache behaviour
    cache_enabled: bool = True
    similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    expiry_days: float = Field(default=30, gt=0)

    # Query defaults
    context_limit: int = Field(default=3, ge=0)
    verbose: bool = False

    # Redis configuration
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "q:"

    # Embedding configuration
    # Options: "titan" (AWS Bedrock Titan) or "st_local" (Sentence Transformers - local)
    embed_provider: Literal["titan", "st_local"] = "titan"
    # For titan: Bedrock model ID; for st_local: sentence-transformers model name
    embed_model_name: str = "amazon.titan-embed-text-v1"
    # Must match the embedder: 1536 for titan v1, 384 for all-MiniLM-L6-v2
    vector_dim: int = 1536

    # Completion model (Anthropic on Bedrock). Model ID or inference profile ARN.
    completion_model: str = "anthropic.claude-3-haiku-20240307-v1:0"
    max_tokens: int = 1024

    # AWS/Bedrock configuration
    aws_region: str = "us-east-1"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    @property
    def ttl(self) -> timedelta:
        """Lifetime of a cache entry."""
        return timedelta(days=self.expiry_days)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # defaults < user config file < .env < environment < explicit kwargs
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            UserConfigSource(settings_cls),
            file_secret_settings,
        )


class SettingsProvider:
    """
    Hands out the current Settings and lets callers invalidate them.

    The cache engine asks the provider at the start of every operation, so a
    ``reload()`` (after the config file changes) or an ``override()`` takes
    effect without restarting the process.
    """

    def __init__(self, settings: Settings | None = None, **overrides: Any):
        self._overrides = overrides
        self._settings = settings

    def get(self) -> Settings:
        """Return the current settings, loading them on first use."""
        if self._settings is None:
            self._settings = Settings(**self._overrides)
        return self._settings

    def reload(self) -> Settings:
        """Drop the loaded settings and read every source again."""
        self._settings = None
        return self.get()

    def override(self, **values: Any) -> Settings:
        """Replace individual fields for the rest of this process."""
        self._overrides.update(values)
        self._settings = self.get().model_copy(update=values)
        return self._settings
