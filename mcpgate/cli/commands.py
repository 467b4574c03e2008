"""CLI commands for mcpgate.

``start`` runs the proxy; ``health`` and ``sessions`` query a running one;
``parse`` shows how a command line will be spawned; ``init`` writes a
default config file.
"""

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from mcpgate import __logo__, __version__
from mcpgate.cli.shared.http_utils import get_proxy_base_url, http_json
from mcpgate.cli.shared.logging_utils import configure_console_logging, ensure_rotating_log_file
from mcpgate.cli.shared.network_utils import base_url, is_port_in_use
from mcpgate.config.loader import get_config_path, load_config, save_config
from mcpgate.config.schema import Config
from mcpgate.proxy.command_parser import parse_command, require_command
from mcpgate.utils.exceptions import CommandError

app = typer.Typer(
    name="mcpgate",
    help=f"{__logo__} mcpgate - HTTP proxy for stdio MCP servers",
    no_args_is_help=True,
)

console = Console()


def _load_config_or_exit(config_path: Path | None) -> Config:
    try:
        return load_config(config_path)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e


def apply_cli_overrides(
    config: Config,
    *,
    command: str | None = None,
    host: str | None = None,
    port: int | None = None,
    verbose: bool | None = None,
    quiet: bool | None = None,
    color: bool | None = None,
) -> Config:
    """Flags given on the command line win over the config file."""
    if command is not None:
        config.child.command = command
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if verbose:
        config.logging.verbose = True
    if quiet:
        config.logging.quiet = True
    if color is not None:
        config.child.color = color
    return config


def prompt_for_settings(config: Config) -> bool:
    """Ask for command, port and verbosity; False when the user cancels."""
    while True:
        command = typer.prompt(
            "Enter the command to run your MCP server",
            default=config.child.command or None,
        ).strip()
        if command:
            break
        console.print("[yellow]Command cannot be empty[/yellow]")
    while True:
        port = typer.prompt("Enter the port to start the server", default=config.server.port, type=int)
        if 1 <= port <= 65535:
            break
        console.print("[yellow]Port must be a number between 1 and 65535[/yellow]")
    verbose = typer.confirm("Enable verbose logging?", default=config.logging.verbose)
    if not typer.confirm(f"Start server with: {command} on port {port}?", default=True):
        return False
    config.child.command = command
    config.server.port = port
    config.logging.verbose = verbose
    return True


def _print_server_info(config: Config, argv: list[str]) -> None:
    url = base_url(config.server.host, config.server.port)
    body = (
        f"[green]Server started[/green]\n\n"
        f"[blue]Port:[/blue] [yellow]{config.server.port}[/yellow]\n"
        f"[blue]Command:[/blue] [cyan]{escape(argv[0])}[/cyan] [dim]{escape(' '.join(argv[1:]))}[/dim]\n\n"
        f"[blue]Endpoints:[/blue]\n"
        f"  MCP:      {url}/mcp\n"
        f"  Health:   {url}/health\n"
        f"  Sessions: {url}/sessions\n"
        f"[dim]Press Ctrl+C to stop[/dim]"
    )
    console.print(Panel(body, border_style="green", expand=False))


# ============================================================================
# Proxy
# ============================================================================


@app.command()
def start(
    command: str = typer.Option(None, "--command", "-c", help="Command that launches the stdio MCP server"),
    host: str = typer.Option(None, "--host", help="Bind host (default from config: 127.0.0.1)"),
    port: int = typer.Option(None, "--port", "-p", help="HTTP port (default from config: 5000)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging, including every framed message"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only warnings and errors"),
    no_color: bool = typer.Option(False, "--no-color", help="Set FORCE_COLOR=0 for child processes"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Prompt for command and port"),
    config_path: Path = typer.Option(None, "--config", help="Config file (default ~/.mcpgate/config.json)"),
):
    """Start the HTTP proxy in front of a stdio MCP server."""
    config = _load_config_or_exit(config_path)
    apply_cli_overrides(
        config,
        command=command,
        host=host,
        port=port,
        verbose=verbose,
        quiet=quiet,
        color=False if no_color else None,
    )

    if interactive or not config.child.command:
        if not prompt_for_settings(config):
            console.print("[yellow]Setup cancelled[/yellow]")
            raise typer.Exit(0)

    level = configure_console_logging(
        verbose=config.logging.verbose,
        quiet=config.logging.quiet,
        color=config.child.color,
    )
    if config.logging.log_file:
        log_path = ensure_rotating_log_file("proxy", level=level)
        console.print(f"[dim]Logs: {log_path}[/dim]")

    try:
        parsed = require_command(config.child.command)
    except CommandError as e:
        console.print(f"[red]{e.message}[/red]")
        console.print("[yellow]Try: mcpgate start --interactive[/yellow]")
        raise typer.Exit(1) from e

    host, port = config.server.host, config.server.port
    if is_port_in_use(host, port):
        console.print(
            f"[red]Port {port} is already in use.[/red] "
            f"Try a different port with [cyan]--port[/cyan] (current: {host}:{port})."
        )
        raise typer.Exit(1)

    import uvicorn

    from mcpgate.api.server import ProxyServer, create_app
    from mcpgate.proxy.registry import SpawnSpec

    api_app = create_app(config, SpawnSpec.from_parsed(parsed))
    uvicorn_config = uvicorn.Config(
        api_app,
        host=host,
        port=port,
        log_level=level.lower(),
        timeout_graceful_shutdown=config.server.graceful_shutdown_seconds,
    )
    api_server = ProxyServer(uvicorn_config, api_app.state.registry)
    _print_server_info(config, parsed.argv)
    console.print("[blue]Mode: stdio[/blue]")

    try:
        api_server.run()
    except OSError as e:
        if is_port_in_use(host, port):
            console.print(f"[red]Port {port} is already in use.[/red] Try a different port with [cyan]--port[/cyan].")
            raise typer.Exit(1) from e
        raise
    console.print("[green]Goodbye![/green]")


@app.command()
def parse(
    command: str = typer.Argument(..., help="Command line to inspect"),
):
    """Show how a command line will be spawned (binary + arguments)."""
    try:
        parsed = parse_command(command)
    except CommandError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e
    if parsed.is_empty:
        console.print("[yellow]Nothing to spawn[/yellow]")
        raise typer.Exit(1)
    table = Table(title="Spawn plan")
    table.add_column("#", style="dim")
    table.add_column("Value", style="cyan")
    table.add_row("binary", parsed.binary)
    for i, arg in enumerate(parsed.arguments):
        table.add_row(str(i), arg)
    console.print(table)
    console.print(f"[dim]argv: {escape(parsed.display())}[/dim]")


# ============================================================================
# Running-proxy queries
# ============================================================================


def _query(path: str, url: str | None, config_path: Path | None, timeout: float) -> None:
    base = (url or get_proxy_base_url(_load_config_or_exit(config_path))).rstrip("/")
    try:
        payload = http_json("GET", f"{base}{path}", timeout=timeout)
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e
    console.print(json.dumps(payload, indent=2, ensure_ascii=False))


@app.command()
def health(
    url: str = typer.Option(None, "--url", help="Proxy base URL (default from config)"),
    config_path: Path = typer.Option(None, "--config", help="Config file"),
    timeout: float = typer.Option(3.0, "--timeout", help="HTTP timeout in seconds"),
):
    """Fetch /health from a running proxy."""
    _query("/health", url, config_path, timeout)


@app.command()
def sessions(
    url: str = typer.Option(None, "--url", help="Proxy base URL (default from config)"),
    config_path: Path = typer.Option(None, "--config", help="Config file"),
    timeout: float = typer.Option(3.0, "--timeout", help="HTTP timeout in seconds"),
):
    """List sessions of a running proxy."""
    _query("/sessions", url, config_path, timeout)


# ============================================================================
# Config
# ============================================================================


@app.command()
def init(
    config_path: Path = typer.Option(None, "--config", help="Where to write (default ~/.mcpgate/config.json)"),
    command: str = typer.Option("", "--command", "-c", help="Command to store as child.command"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write a default config file."""
    path = config_path or get_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists[/yellow] (use --force to overwrite)")
        raise typer.Exit(1)
    config = Config()
    config.child.command = command
    save_config(config, path)
    console.print(f"[green]✓[/green] Wrote {path}")


@app.command()
def version():
    """Print the mcpgate version."""
    console.print(f"{__logo__} mcpgate v{__version__}")
