"""Configuration with environment variable support.

All settings can be configured via environment variables with the SOLARA_ prefix.
Example: SOLARA_AUDIO_MAX_ATTEMPTS=3 allows three attempts per audio fetch.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from solara_proxy.core.exceptions import ConfigError

if TYPE_CHECKING:
    from solara_proxy.proxy.fetch import RetryPolicy

DEFAULT_API_BASE_URL = "https://music-api.gdstudio.xyz/api.php"

LogLevel = Literal["debug", "info", "warning", "error"]


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Nested sections are flattened, so ``audio: {max_attempts: 3}`` becomes
    ``audio_max_attempts``.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Flat configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ConfigError: If the file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ConfigError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return flatten_config(data)


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ProxySettings(BaseSettings):
    """Process-wide proxy configuration.

    Read once at startup and never mutated afterwards. Values come from, in
    order of precedence: constructor arguments, SOLARA_* environment
    variables, a .env file, then the defaults below.

    List values are given as JSON in the environment, e.g.
    SOLARA_AUDIO_DOMAINS='["kuwo.cn", "kuwo.com"]'.
    """

    model_config = SettingsConfigDict(
        env_prefix="SOLARA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(
        default="0.0.0.0",
        description="Address the HTTP server binds to.",
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port the HTTP server listens on.",
    )
    api_base_url: str = Field(
        default=DEFAULT_API_BASE_URL,
        description="Metadata API endpoint that query parameters are forwarded to.",
    )
    audio_domains: list[str] = Field(
        default_factory=lambda: ["kuwo.cn"],
        description="Domains (and their subdomains) the audio path may fetch from.",
    )
    audio_referer: str = Field(
        default="https://www.kuwo.cn/",
        description="Referer sent with audio fetches; the audio hosts reject hotlinks without it.",
    )
    api_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total attempts per metadata API request.",
    )
    api_retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base backoff delay for metadata requests (seconds). Doubles per attempt.",
    )
    audio_max_attempts: int = Field(
        default=2,
        ge=1,
        description="Total attempts per audio request. Kept low: players re-request on their own.",
    )
    audio_retry_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Base backoff delay for audio requests (seconds). Doubles per attempt.",
    )
    upstream_timeout: float = Field(
        default=15.0,
        gt=0.0,
        description="Per-attempt upstream timeout (seconds).",
    )
    max_connections: int = Field(
        default=100,
        ge=1,
        description="Maximum concurrent upstream connections.",
    )
    metrics_enabled: bool = Field(
        default=False,
        description="Expose Prometheus metrics at /metrics.",
    )
    log_level: LogLevel = Field(
        default="info",
        description="Log level: debug, info, warning or error.",
    )

    def api_retry_policy(self) -> RetryPolicy:
        """Retry policy for the metadata API path."""
        from solara_proxy.proxy.fetch import RetryPolicy

        return RetryPolicy(
            max_attempts=self.api_max_attempts,
            base_delay=self.api_retry_delay,
            timeout=self.upstream_timeout,
        )

    def audio_retry_policy(self) -> RetryPolicy:
        """Retry policy for the audio path."""
        from solara_proxy.proxy.fetch import RetryPolicy

        return RetryPolicy(
            max_attempts=self.audio_max_attempts,
            base_delay=self.audio_retry_delay,
            timeout=self.upstream_timeout,
        )

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "server": {
                "host": self.host,
                "port": self.port,
                "metrics_enabled": self.metrics_enabled,
                "log_level": self.log_level,
            },
            "upstream": {
                "api_base_url": self.api_base_url,
                "audio_domains": ", ".join(self.audio_domains),
                "audio_referer": self.audio_referer,
                "upstream_timeout": self.upstream_timeout,
                "max_connections": self.max_connections,
            },
            "retry": {
                "api_max_attempts": self.api_max_attempts,
                "api_retry_delay": self.api_retry_delay,
                "audio_max_attempts": self.audio_max_attempts,
                "audio_retry_delay": self.audio_retry_delay,
            },
        }


_config: ProxySettings | None = None


def get_config() -> ProxySettings:
    """Get the global configuration instance.

    The instance is created from the environment on first use and cached for
    the lifetime of the process. Call clear_config() to force a reload.
    """
    global _config
    if _config is None:
        _config = ProxySettings()
    return _config


def clear_config() -> None:
    """Clear the cached configuration. Useful for testing."""
    global _config
    _config = None
