"""Solara Proxy - CORS-friendly relay for music metadata and audio streams."""

__version__ = "0.1.0"
