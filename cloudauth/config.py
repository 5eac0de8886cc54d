"""Configuration system for cloudauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.cloudauth] section (project-level)
3. ./cloudauth.toml (project-level, explicit)
4. ~/.config/cloudauth/config.toml (user-level, overrides project)
5. File named by CLOUDAUTH_CONFIG_FILE
6. Environment variables (highest priority)

Environment variables use CLOUDAUTH_ prefix with nested delimiter __.
Example: CLOUDAUTH_OAUTH__AUTH_TIMEOUT_SECONDS, CLOUDAUTH_STORAGE__BACKEND
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore[import-not-found]
    except ImportError:
        tomllib = None


logger = logging.getLogger("cloudauth.config")


def _user_config_dir() -> Path:
    """Directory holding the user-level config and the default token file."""
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "~")).expanduser() / "cloudauth"
    return Path("~/.config/cloudauth").expanduser()


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("cloudauth.toml")
    if project_toml.exists():
        files.append(project_toml)

    user_config = _user_config_dir() / "config.toml"
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("CLOUDAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    if tomllib is None:
        return {}

    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("cloudauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_id",
    "redis_url",
}

_REDACTED = "********"


class OAuthSettings(BaseSettings):
    """OAuth flow settings.

    Environment prefix: CLOUDAUTH_OAUTH__
    Example: CLOUDAUTH_OAUTH__AUTH_TIMEOUT_SECONDS=60
    """

    model_config = SettingsConfigDict(
        env_prefix="CLOUDAUTH_OAUTH__",
        extra="ignore",
    )

    auth_timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        description="Maximum seconds to wait for the redirect callback",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        description="Timeout for token polling and refresh requests",
    )
    state_length: int = Field(
        default=32,
        ge=16,
        le=128,
        description="Length of the generated CSRF state string",
    )
    redirect_scheme: str = Field(
        default="http://127.0.0.1:8765/callback",
        description="Redirect target the user agent watches for",
    )
    callback_host: str = Field(default="127.0.0.1", description="Loopback callback bind address")
    callback_port: int = Field(default=8765, ge=0, le=65535, description="Loopback callback port")
    callback_path: str = Field(default="/callback", description="Loopback callback path")
    server_url: str = Field(
        default="",
        description="Base URL of the OAuth broker server (auth/{provider}, auth/tokens/{state})",
    )
    client_id: str = Field(default="", description="Client ID sent with refresh requests")
    refresh_skew_seconds: int = Field(
        default=60,
        ge=0,
        description="Treat tokens expiring within this many seconds as expired",
    )

    @field_validator("callback_path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        """Ensure the callback path is absolute."""
        return v if v.startswith("/") else f"/{v}"


class StorageSettings(BaseSettings):
    """Token storage settings.

    Environment prefix: CLOUDAUTH_STORAGE__
    Example: CLOUDAUTH_STORAGE__BACKEND=replicated
    """

    model_config = SettingsConfigDict(
        env_prefix="CLOUDAUTH_STORAGE__",
        extra="ignore",
    )

    backend: Literal["memory", "file", "keyring", "redis", "replicated"] = Field(
        default="replicated",
        description="Token storage backend",
    )
    file_path: str = Field(
        default="",
        description="JSON token file (default: <user config dir>/tokens.json)",
    )
    keyring_service: str = Field(default="cloudauth", description="OS keyring service name")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    redis_prefix: str = Field(default="cloudauth", description="Redis key prefix")
    replica_primary: Literal["memory", "file", "keyring", "redis"] = Field(
        default="memory",
        description="Fast backend of the replicated store",
    )
    replica_secondary: Literal["memory", "file", "keyring", "redis"] = Field(
        default="file",
        description="Durable backend of the replicated store",
    )

    @property
    def resolved_file_path(self) -> Path:
        """The token file path with the default applied."""
        if self.file_path:
            return Path(self.file_path).expanduser()
        return _user_config_dir() / "tokens.json"


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: CLOUDAUTH_LOG__
    Example: CLOUDAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="CLOUDAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


_SECTIONS: list[tuple[str, str, str]] = [
    ("OAuth Flow", "oauth", "OAUTH"),
    ("Token Storage", "storage", "STORAGE"),
    ("Logging", "log", "LOG"),
]


_SECTION_MODELS: dict[str, type[BaseSettings]] = {
    "oauth": OAuthSettings,
    "storage": StorageSettings,
    "log": LogSettings,
}


class CloudAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: CLOUDAUTH__
    """

    model_config = SettingsConfigDict(
        env_prefix="CLOUDAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()

        # Explicit keyword data wins over anything read from TOML files
        merged = _deep_merge(toml_config, data)

        # Section env vars (CLOUDAUTH_OAUTH__*) must still beat TOML values,
        # so overlay whatever the section model picked up from the environment.
        for attr_name, section_cls in _SECTION_MODELS.items():
            section = merged.get(attr_name)
            if isinstance(section, dict):
                from_env = section_cls().model_dump(exclude_unset=True)
                merged[attr_name] = section_cls(**{**section, **from_env})

        super().__init__(**merged)

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# cloudauth configuration", "# Generated by: cloudauth config --toml", ""]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in _SECTIONS},
        )
        for _, section_name, _ in _SECTIONS:
            lines.append(f"[{section_name}]")
            for field_name, field_value in all_data.get(section_name, {}).items():
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            section_cls = type(getattr(self, section_name))
            lines.extend(
                f'{rn} = "{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# cloudauth environment variables",
            "# Generated by: cloudauth config --env",
            "",
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in _SECTIONS},
        )
        for _, attr_name, env_prefix in _SECTIONS:
            for field_name, field_value in all_data.get(attr_name, {}).items():
                env_name = f"CLOUDAUTH_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            section_cls = type(getattr(self, attr_name))
            for redacted_name in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys()):
                env_name = f"CLOUDAUTH_{env_prefix}__{redacted_name.upper()}"
                lines.append(f'export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["cloudauth configuration", "=" * 60]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in _SECTIONS},
        )
        for display_name, attr_name, _ in _SECTIONS:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:22} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:22} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> CloudAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return CloudAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> CloudAuthSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
