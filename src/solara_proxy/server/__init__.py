"""aiohttp server binding for the proxy core."""

from solara_proxy.server.relay import ProxyServer, relay_response

__all__ = ["ProxyServer", "relay_response"]
