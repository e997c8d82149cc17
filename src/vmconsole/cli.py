"""CLI entry point for vmconsole.

Commands:
    vmconsole start              # Boot the machine and its console bridges
    vmconsole args               # Show the machine command line
    vmconsole args --bridge 0    # Show a bridge command line
    vmconsole config show        # Print the effective configuration
    vmconsole config set K V     # Change one configuration value

While `start` runs:
    SIGINT / SIGTERM  finish every session and exit
    SIGUSR1           toggle the wake lock
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vmconsole import __version__
from vmconsole.click_group import ConsoleGroup
from vmconsole.config_manager import ConfigError, ConfigManager, ConsoleConfig
from vmconsole.host_facts import HostFacts
from vmconsole.launch_builder import (
    CONSOLE_COUNT,
    ConfigurationError,
    build_bridge_launch,
    build_machine_launch,
)
from vmconsole.modules.pty_process import LaunchError
from vmconsole.service import (
    LockTimeoutError,
    RemoteDisplayError,
    ServiceContext,
    ServiceError,
    enable_remote_display,
)

logger = logging.getLogger(__name__)


def _setup_logging(config: ConsoleConfig, verbose: bool = False) -> None:
    """Configure logging to the log file and stderr."""
    log_file = Path(config.log_file).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if verbose else getattr(logging, config.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stderr),
        ],
    )


def _load_config(ctx: click.Context) -> ConsoleConfig:
    try:
        return ConfigManager.load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


class ConsoleObserver:
    """Prints session lifecycle notifications to the terminal."""

    def __init__(self, context: ServiceContext, console: Console):
        self._context = context
        self._console = console

    def _label(self, session: Any) -> str:
        try:
            slot = self._context.registry.index_of(session) + 1
        except ValueError:
            slot = "?"
        return f"[{slot}] {session.name}"

    def on_title_changed(self, session: Any) -> None:
        self._console.print(f"{self._label(session)} title: {escape(session.title)}", highlight=False)

    def on_session_finished(self, session: Any) -> None:
        style = "green" if session.exit_code == 0 else "yellow"
        self._console.print(
            f"[{style}]{self._label(session)} finished (exit code {session.exit_code})[/{style}]",
            highlight=False,
        )

    def on_text_changed(self, session: Any) -> None:
        pass

    def on_bell(self, session: Any) -> None:
        pass

    def on_clipboard_text(self, session: Any, text: str) -> None:
        pass

    def on_colors_changed(self, session: Any) -> None:
        pass


@click.group(
    cls=ConsoleGroup,
    context_settings={"help_option_names": ["--help", "-h"]},
)
@click.option("--config", "config_path", help="Config file path", type=click.Path())
@click.pass_context
@click.version_option(version=__version__)
def main(ctx: click.Context, config_path: str | None) -> None:
    """vmconsole - supervised QEMU machine with socat console bridges.

    Starts one emulated machine plus one bridge per serial console and keeps
    them running until asked to stop.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.option("--wake-lock", is_flag=True, help="Hold the wake lock from the start")
@click.option("--vnc", is_flag=True, help="Enable the VNC display after boot")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def start(ctx: click.Context, wake_lock: bool, vnc: bool, verbose: bool) -> None:
    """Boot the machine and its console bridges, then wait.

    \b
    Examples:
        vmconsole start
        vmconsole start --wake-lock --vnc
    """
    config = _load_config(ctx)
    _setup_logging(config, verbose)
    console = Console(stderr=True)

    context = ServiceContext(config)
    observer = ConsoleObserver(context, console)

    try:
        sessions = context.bootstrap()
    except (ConfigurationError, LaunchError, ServiceError) as e:
        click.echo(f"Error: {e}", err=True)
        context.request_termination()
        sys.exit(1)

    context.registry.attach_observer(observer)
    for slot, session in enumerate(sessions, start=1):
        console.print(f"[{slot}] {session.name} (pid {session.pid})", highlight=False)

    if wake_lock:
        try:
            context.keep_alive.enable()
        except LockTimeoutError as e:
            click.echo(f"Warning: {e}", err=True)

    if vnc:
        try:
            port = enable_remote_display(context.registry)
            console.print(f"VNC display at vnc://127.0.0.1:{port}", highlight=False)
        except RemoteDisplayError as e:
            click.echo(f"Warning: {e}", err=True)

    def _handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        context.request_termination()

    def _handle_toggle(signum, frame):
        try:
            context.keep_alive.toggle()
        except LockTimeoutError as e:
            logger.warning(f"Wake lock toggle failed: {e}")

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGUSR1, _handle_toggle)

    # Short waits keep the main thread responsive to signals
    while not context.wait(timeout=0.5):
        pass

    context.registry.detach_observer()


@main.command()
@click.option(
    "--bridge",
    "bridge_index",
    type=click.IntRange(0, CONSOLE_COUNT - 1),
    help="Show the bridge of this console instead of the machine",
)
@click.pass_context
def args(ctx: click.Context, bridge_index: int | None) -> None:
    """Show the command line and environment a session would get.

    \b
    Examples:
        vmconsole args
        vmconsole args --bridge 2
    """
    config = _load_config(ctx)
    facts = HostFacts.probe(config)

    try:
        if bridge_index is None:
            spec = build_machine_launch(facts)
        else:
            spec = build_bridge_launch(bridge_index, facts)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    table = Table(title=spec.executable_path, show_header=True)
    table.add_column("#", justify="right")
    table.add_column("Argument")
    for position, arg in enumerate(spec.argv):
        table.add_row(str(position), arg)

    env_table = Table(title=f"Environment (cwd {spec.working_directory})")
    env_table.add_column("Variable")
    env_table.add_column("Value")
    for name in sorted(spec.envp):
        env_table.add_row(name, spec.envp[name])

    console = Console()
    console.print(table)
    console.print(env_table)


@main.group()
def config() -> None:
    """Inspect or change ~/.vmconsole/config.toml."""


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration."""
    current = _load_config(ctx)
    for key, value in current.to_dict().items():
        click.echo(f"{key} = {value}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set one configuration value.

    \b
    Examples:
        vmconsole config set executable_dir /opt/qemu/bin
        vmconsole config set log_level DEBUG
    """
    try:
        ConfigManager.update_config(ctx.obj.get("config_path"), **{key: value})
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Set {key} = {value}")


if __name__ == "__main__":
    main()
