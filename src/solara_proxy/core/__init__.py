"""Core configuration and error types."""

from solara_proxy.core.config import ProxySettings, clear_config, get_config
from solara_proxy.core.exceptions import (
    ConfigError,
    SolaraProxyError,
    UpstreamUnavailableError,
)

__all__ = [
    "ProxySettings",
    "get_config",
    "clear_config",
    "SolaraProxyError",
    "UpstreamUnavailableError",
    "ConfigError",
]
