"""Exceptions raised by the proxy core."""

from __future__ import annotations


class SolaraProxyError(Exception):
    """Base class for all proxy errors."""


class UpstreamUnavailableError(SolaraProxyError):
    """Every attempt to reach an upstream failed at the transport level.

    The last transport error is available as ``__cause__``.
    """

    def __init__(self, url: str, attempts: int):
        self.url = url
        self.attempts = attempts
        super().__init__(f"Upstream unreachable after {attempts} attempt(s): {url}")


class ConfigError(SolaraProxyError, ValueError):
    """Configuration could not be loaded or is invalid."""
