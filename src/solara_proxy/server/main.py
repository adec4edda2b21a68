"""Server process lifecycle."""

from __future__ import annotations

import asyncio

from rich.console import Console

from solara_proxy.core.config import ProxySettings
from solara_proxy.server.relay import ProxyServer

console = Console()


async def run_server(config: ProxySettings) -> None:
    """Run the proxy server until cancelled."""
    server = ProxyServer(config)

    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()
