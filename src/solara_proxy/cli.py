"""Solara Proxy CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from solara_proxy.observability.logging import LOG_LEVELS, configure_logging

console = Console()

BANNER = """
 ____        _                   ____
/ ___|  ___ | | __ _ _ __ __ _  |  _ \\ _ __ _____  ___   _
\\___ \\ / _ \\| |/ _` | '__/ _` | | |_) | '__/ _ \\ \\/ / | | |
 ___) | (_) | | (_| | | | (_| | |  __/| | | (_) >  <| |_| |
|____/ \\___/|_|\\__,_|_|  \\__,_| |_|   |_|  \\___/_/\\_\\\\__, |
                                                     |___/
           Music metadata and audio, CORS-ready
"""


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """Solara Proxy - CORS relay for music metadata and audio streams."""
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("[bold]Usage:[/bold]")
        console.print("  solara-proxy serve --port 8080    Start the proxy")
        console.print("  solara-proxy status               Check a running proxy")
        console.print("  solara-proxy config show          Show effective configuration")
        console.print("\nRun [cyan]solara-proxy --help[/cyan] for all commands.")


@main.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--host", default=None, help="Bind address (default: 0.0.0.0)")
@click.option("--port", "-p", type=int, default=None, help="Listen port (default: 8080)")
@click.option("--api-base-url", default=None, help="Metadata API endpoint to forward to")
@click.option(
    "--metrics/--no-metrics",
    default=None,
    help="Expose Prometheus metrics at /metrics",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level (default: info)",
)
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines")
def serve(
    config_file: str | None,
    host: str | None,
    port: int | None,
    api_base_url: str | None,
    metrics: bool | None,
    log_level: str | None,
    log_json: bool,
):
    """Run the proxy server.

    Settings are read from SOLARA_* environment variables, then the config
    file, then the options given here (highest precedence).

    Examples:

        solara-proxy serve

        solara-proxy serve --port 9000 --metrics
    """
    from solara_proxy.core.config import ProxySettings, load_config_from_file
    from solara_proxy.server.main import run_server

    overrides: dict[str, Any] = {}
    if config_file:
        try:
            overrides.update(load_config_from_file(config_file))
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Error loading config:[/red] {e}")
            sys.exit(1)

    cli_values = {
        "host": host,
        "port": port,
        "api_base_url": api_base_url,
        "metrics_enabled": metrics,
        "log_level": log_level,
    }
    overrides.update({key: value for key, value in cli_values.items() if value is not None})

    try:
        settings = ProxySettings(**overrides)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{e}")
        sys.exit(1)

    configure_logging(settings.log_level, json_output=log_json)

    console.print(BANNER, style="cyan")
    console.print(f"Starting proxy on {settings.host}:{settings.port}...", style="yellow")
    console.print(f"Metadata API: {settings.api_base_url}", style="dim")
    console.print(f"Audio domains: {', '.join(settings.audio_domains)}", style="dim")
    console.print(
        f"Retries: api {settings.api_max_attempts}x/{settings.api_retry_delay}s, "
        f"audio {settings.audio_max_attempts}x/{settings.audio_retry_delay}s, "
        f"timeout {settings.upstream_timeout}s",
        style="dim",
    )
    if settings.metrics_enabled:
        console.print("Metrics: enabled at /metrics", style="green")

    try:
        asyncio.run(run_server(settings))
    except KeyboardInterrupt:
        console.print("[green]Proxy stopped.[/green]")


@main.command()
@click.option("--url", default="http://localhost:8080", help="Base URL of the proxy")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(url: str, json_output: bool):
    """Show health of a running proxy."""
    import httpx

    try:
        with httpx.Client(timeout=5.0) as client:
            resp = client.get(f"{url.rstrip('/')}/health")
            health = resp.json()
    except Exception as e:
        console.print(f"[red]Error connecting to proxy:[/red] {e}")
        sys.exit(1)

    if json_output:
        console.print(json.dumps(health, indent=2))
        return

    state = health.get("status", "unknown")
    style = "green" if state == "ok" else "red"
    console.print(f"\n[bold]Proxy:[/bold] {url}")
    console.print(f"[bold]Status:[/bold] [{style}]{state}[/{style}]")
    if "uptime" in health:
        console.print(f"[bold]Uptime:[/bold] {_format_uptime(health['uptime'])}")
    if "port" in health:
        console.print(f"[bold]Port:[/bold] {health['port']}")
    if state != "ok":
        sys.exit(1)


def _format_uptime(seconds: float) -> str:
    """Format seconds as a short human readable duration."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@main.command()
def version():
    """Show version information."""
    from solara_proxy import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """View configuration settings.

    All settings can be configured via environment variables with the
    SOLARA_ prefix.

    Examples:

        solara-proxy config show

        solara-proxy config show --section retry
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (server, upstream, retry)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings.

    Values come from environment variables or defaults.
    """
    from solara_proxy.core.config import clear_config, get_config

    clear_config()
    try:
        cfg = get_config()
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{e}")
        sys.exit(1)
    display = cfg.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        console.print(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            table.add_row(key, str(value), f"SOLARA_{key.upper()}")

        console.print(table)
        console.print()


if __name__ == "__main__":
    main()
