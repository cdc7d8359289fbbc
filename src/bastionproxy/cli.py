"""bastionproxy CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()

_shutdown_requested = False

BANNER = """
 _               _   _
| |__   __ _ ___| |_(_) ___  _ __  _ __  _ __ _____  ___   _
| '_ \\ / _` / __| __| |/ _ \\| '_ \\| '_ \\| '__/ _ \\ \\/ / | | |
| |_) | (_| \\__ \\ |_| | (_) | | | | |_) | | | (_) >  <| |_| |
|_.__/ \\__,_|___/\\__|_|\\___/|_| |_| .__/|_|  \\___/_/\\_\\\\__, |
                                  |_|                  |___/
          SOCKS5 through your SSH bastions
"""

_OPTION_FIELDS = {
    "listen_host": "listen_host",
    "listen_port": "listen_port",
    "user": "ssh_user",
    "key_file": "ssh_key_file",
    "idle_close": "idle_close",
    "max_retries": "max_retries",
    "status_interval": "status_interval",
    "agent_path": "agent_path",
    "known_hosts": "known_hosts",
    "connect_timeout": "connect_timeout",
}


@click.group(invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--listen-host", "-l", default=None, help="SOCKS5 listen host (default: 127.0.0.1)")
@click.option("--listen-port", "-p", type=int, default=None, help="SOCKS5 listen port (default: 5101)")
@click.option(
    "--user",
    "-u",
    default=None,
    help="Bastion SSH username. Leave blank to use current user name.",
)
@click.option(
    "--key-file",
    "-k",
    type=click.Path(),
    default=None,
    help="Private key file to use when authenticating with bastion hosts. "
    "Leave unset to rely on SSH agent.",
)
@click.option(
    "--idle-close",
    "-t",
    default=None,
    help="Idle timeout before closing bastion SSH connection, e.g. 4h, 30m, 90 (default: 4h)",
)
@click.option(
    "--max-retries",
    "-r",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum retries for a port forward through a bastion SSH connection (default: 2)",
)
@click.option(
    "--status-interval",
    default=None,
    help="Display connection statistics on this interval, e.g. 5m (default: 0, disabled)",
)
@click.option("--agent-path", default=None, help="SSH agent socket path (default: $SSH_AUTH_SOCK)")
@click.option(
    "--known-hosts",
    type=click.Path(),
    default=None,
    help="known_hosts file for bastion host key checks (default: no checks)",
)
@click.option(
    "--connect-timeout",
    default=None,
    help="Timeout for dialling a bastion, e.g. 30s (default: none)",
)
@click.option("--verbose", "-v", count=True, help="Change logging verbosity (-v debug, -vv ssh debug)")
@click.pass_context
def main(
    ctx: click.Context,
    config_file: str | None,
    listen_host: str | None,
    listen_port: int | None,
    user: str | None,
    key_file: str | None,
    idle_close: str | None,
    max_retries: int | None,
    status_interval: str | None,
    agent_path: str | None,
    known_hosts: str | None,
    connect_timeout: str | None,
    verbose: int,
):
    """bastionproxy - SOCKS5 proxy through SSH bastion hosts.

    Connect with the bastion host as SOCKS5 username and its SSH port as
    password. Connections to the same bastion share one SSH connection.

    Examples:

        bastionproxy

        bastionproxy -p 1080 -u deploy -k ~/.ssh/id_ed25519

        curl --socks5-hostname 127.0.0.1:5101 -U bastion1.example.com:22 http://10.0.0.5/

    Use 'bastionproxy COMMAND --help' for more info on specific commands.
    """
    overrides: dict[str, Any] = {}
    if config_file:
        from bastionproxy.core.config import flatten_config, load_config_from_file

        try:
            raw_config = load_config_from_file(config_file)
            overrides.update(flatten_config(raw_config))
            console.print(f"Loaded config from {config_file}", style="dim")
        except Exception as e:
            console.print(f"[red]Failed to load config:[/red] {escape(str(e))}")
            sys.exit(1)

    options = {
        "listen_host": listen_host,
        "listen_port": listen_port,
        "user": user,
        "key_file": key_file,
        "idle_close": idle_close,
        "max_retries": max_retries,
        "status_interval": status_interval,
        "agent_path": agent_path,
        "known_hosts": known_hosts,
        "connect_timeout": connect_timeout,
    }
    for option, value in options.items():
        if value is not None:
            overrides[_OPTION_FIELDS[option]] = value

    ctx.ensure_object(dict)
    ctx.obj["overrides"] = overrides

    if ctx.invoked_subcommand is None:
        _build_config(overrides)
        _configure_logging(verbose)
        _run_with_signal_handling()


def _build_config(overrides: dict[str, Any]):
    from pydantic import ValidationError

    from bastionproxy.core.config import ProxyConfig, set_config

    try:
        config = ProxyConfig(**overrides)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{escape(str(e))}")
        sys.exit(1)
    except (OSError, KeyError) as e:
        console.print(f"[red]Cannot determine SSH user, pass --user:[/red] {escape(str(e))}")
        sys.exit(1)
    set_config(config)
    return config


def _configure_logging(verbosity: int) -> None:
    import asyncssh
    import structlog

    level = logging.DEBUG if verbosity >= 1 else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )

    if verbosity >= 2:
        logging.basicConfig(level=logging.DEBUG)
        asyncssh.set_log_level(logging.DEBUG)
        asyncssh.set_debug_level(2)
    else:
        asyncssh.set_log_level(logging.WARNING)


def _run_with_signal_handling() -> None:
    """Run the proxy with proper signal handling for clean Ctrl+C shutdown."""
    from bastionproxy.core.config import get_config
    from bastionproxy.server.proxy import BastionProxy

    config = get_config()

    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    proxy = BastionProxy()
    main_task = loop.create_task(proxy.run())

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except KeyboardInterrupt:
        pass
    except OSError as e:
        console.print(f"[red]Unable to listen on {config.listen_addr}:[/red] {escape(str(e))}")
        sys.exit(1)
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


@main.command()
def version():
    """Show version information."""
    from bastionproxy import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """View configuration settings.

    All settings can be configured via environment variables with the
    BASTIONPROXY_ prefix, a config file, or command line options.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, json_output: bool):
    """Show the effective configuration."""
    cfg = _build_config(ctx.obj.get("overrides", {}) if ctx.obj else {})
    display = cfg.to_display_dict()

    if json_output:
        import json

        click.echo(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            env_var = f"BASTIONPROXY_{key.upper()}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, env_var)

        console.print(table)
        console.print()


if __name__ == "__main__":
    main()
