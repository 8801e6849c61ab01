"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./chatsync.yaml (working directory)
3. ~/.chatsync/config.yaml (user home)

Environment variables override YAML: CHATSYNC_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class RetryConfig(BaseModel):
    """Backoff schedule for queued message delivery (seconds)."""

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_jitter: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def max_delay_not_below_initial(self) -> "RetryConfig":
        """Ensure the cap does not undercut the first delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class QueueConfig(BaseModel):
    """Outbound queue limits and pacing."""

    max_queue_size: int = Field(default=100, ge=1)
    inter_message_delay: float = Field(default=0.1, ge=0)
    key_prefix: str = "chatsync:queue:"


class CacheConfig(BaseModel):
    """Per-chat message cache limits.

    expiry_hours=None keeps cached history until evicted.
    """

    max_storage_size: int = Field(default=1000, ge=1)
    key_prefix: str = "chatsync:cache:"
    schema_version: int = 1
    expiry_hours: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def key_prefix_not_empty(self) -> "CacheConfig":
        """Reject an empty key prefix."""
        if not self.key_prefix:
            raise ValueError("cache key_prefix must not be empty")
        return self


class StorageConfig(BaseModel):
    """Durable key-value backend.

    path defaults to the platform data directory (see chatsync.utils.paths).
    """

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str | None = None
    quota_bytes: int | None = Field(default=None, gt=0)


class ConnectivityConfig(BaseModel):
    """Optional HTTP reachability probe. Disabled when probe_url is unset."""

    probe_url: str | None = None
    probe_interval: float = Field(default=30.0, gt=0)
    probe_timeout: float = Field(default=5.0, gt=0)


class LoggingConfig(BaseModel):
    """Log level for the chatsync logger hierarchy."""

    level: str = "warning"


class ChatSyncConfig(BaseModel):
    """Top-level configuration for the chatsync engine and CLI."""

    retry: RetryConfig = RetryConfig()
    queue: QueueConfig = QueueConfig()
    cache: CacheConfig = CacheConfig()
    storage: StorageConfig = StorageConfig()
    connectivity: ConnectivityConfig = ConnectivityConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def key_prefixes_disjoint(self) -> "ChatSyncConfig":
        """Queue and cache blobs must not share a key namespace."""
        queue_prefix = self.queue.key_prefix
        cache_prefix = self.cache.key_prefix
        if queue_prefix.startswith(cache_prefix) or cache_prefix.startswith(
            queue_prefix
        ):
            raise ValueError("queue and cache key prefixes must be disjoint")
        return self


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "chatsync.yaml",
        Path.cwd() / "chatsync.yml",
        Path.home() / ".chatsync" / "config.yaml",
        Path.home() / ".chatsync" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply CHATSYNC_<SECTION>_<KEY> env var overrides to config data.

    For example, ``CHATSYNC_RETRY_MAX_RETRIES`` maps to section ``retry``,
    field ``max_retries``. Variables naming an unknown section are ignored.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "CHATSYNC_"
    # Known sections sorted longest-first so greedy prefix match works.
    known_sections = sorted(
        ChatSyncConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()  # e.g. "retry_max_retries"
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            # Coerce to int, bool, or keep as string
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> ChatSyncConfig | None:
    """Load chatsync configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.chatsync/).

    Returns:
        Parsed and validated ChatSyncConfig, or None if no config found.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()
        if path is None:
            return None

    logger.info("Loading config from %s", path)

    with open(path) as f:
        raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return ChatSyncConfig(**data)


def resolve_config(config_path: str | None = None) -> ChatSyncConfig:
    """Load the config file if present, else defaults plus env overrides."""
    config = load_config(config_path)
    if config is not None:
        return config
    return ChatSyncConfig(**_apply_env_overrides({}))
