"""CLI entry point: `relay start`, `relay init`, `relay ask`, `relay logs`."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.panel import Panel

from . import __version__
from .config import Config, DEFAULT_CONFIG_DIR, DEFAULT_CONFIG_FILE, DEFAULTS
from .errors import ConfigError

console = Console()


def _setup_logging(log_dir: Path, verbose: bool = False):
    log_dir.mkdir(parents=True, exist_ok=True)
    log = logging.getLogger("relay")
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    fh = RotatingFileHandler(
        log_dir / "relay.log", maxBytes=5_000_000, backupCount=2
    )
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(fh)
    log.addHandler(logging.StreamHandler())


def _config_errors(errors: list[str], path) -> None:
    click.echo("Configuration errors:", err=True)
    for e in errors:
        click.echo(f"  - {e}", err=True)
    click.echo(f"\nRun 'relay init' to set up, or edit {path}", err=True)
    sys.exit(1)


def _load_config(config_path) -> Config:
    try:
        return Config(config_path)
    except ConfigError as exc:
        message = f"{exc}: {exc.detail}" if exc.detail else str(exc)
        _config_errors([message], config_path or DEFAULT_CONFIG_FILE)


@click.group()
@click.version_option(__version__, prog_name="relay")
def main():
    """Relay — chat with your local AI coding agent from Telegram."""
    pass


@main.command()
def init():
    """Interactive setup: create the config file."""
    click.echo("Relay setup\n")

    if DEFAULT_CONFIG_FILE.exists():
        if not click.confirm(f"Config already exists at {DEFAULT_CONFIG_FILE}. Overwrite?"):
            click.echo("Aborted.")
            return

    bot_token = click.prompt("Telegram Bot Token (from @BotFather)")
    chats = click.prompt(
        "Allowed chat IDs, comma separated (blank = any chat)",
        default="", show_default=False,
    )
    agent_cmd = click.prompt("Agent command", default=DEFAULTS["agent"]["command"])

    allowed = [int(c) for c in chats.replace(" ", "").split(",") if c]
    config_data = {
        "telegram": {
            "bot_token": bot_token,
            "allowed_chats": allowed,
        },
        "agent": {
            "command": agent_cmd,
            "sdk_enabled": True,
            "max_concurrent": DEFAULTS["agent"]["max_concurrent"],
        },
        "limits": dict(DEFAULTS["limits"]),
    }

    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(DEFAULT_CONFIG_FILE, "w") as f:
        yaml.dump(config_data, f, default_flow_style=False, sort_keys=False)

    click.echo(f"\nConfig written to {DEFAULT_CONFIG_FILE}")
    click.echo("Run 'relay start' to begin.")


@main.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def start(config_path, verbose):
    """Start the relay bot (foreground)."""
    cfg = _load_config(config_path)
    errors = cfg.validate()
    if errors:
        _config_errors(errors, cfg.path)

    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    _setup_logging(cfg.log_dir, verbose)

    click.echo(f"Starting relay (agent: {cfg.agent_command})...")
    from .core import Bot
    asyncio.run(Bot(cfg).run())


@main.command()
@click.argument("text", nargs=-1, required=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
@click.option("--no-sdk", is_flag=True, help="Skip the SDK and go straight to the CLI")
def ask(text, config_path, no_sdk):
    """Send one message through sanitize → invoke → chunk and print the result."""
    from .chunker import chunk
    from .errors import InvocationError
    from .dispatch import failure_message
    from .runner import AssistantInvoker, sdk_query
    from .sanitizer import Rejected, sanitize

    cfg = _load_config(config_path)
    prompt = sanitize(" ".join(text), cfg.max_message_length)
    if isinstance(prompt, Rejected):
        console.print(f"[red]Rejected:[/red] {prompt.reason}")
        sys.exit(1)

    invoker = AssistantInvoker(
        command=cfg.agent_command,
        sdk=None if no_sdk or not cfg.sdk_enabled else sdk_query,
        sdk_timeout=cfg.sdk_timeout,
        cli_timeout=cfg.cli_timeout,
    )
    try:
        with console.status("Waiting for the assistant..."):
            reply = asyncio.run(invoker.invoke(prompt))
    except InvocationError as exc:
        console.print(Panel(failure_message(exc), border_style="red"))
        sys.exit(1)

    pieces = chunk(reply.text, cfg.chunk_limit)
    for i, piece in enumerate(pieces, start=1):
        console.print(Panel(
            piece,
            title=f"[dim]{reply.source} · {reply.elapsed:.1f}s · {i}/{len(pieces)}[/dim]",
            border_style="green",
        ))


@main.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
@click.option("-n", "--lines", default=50, help="Number of lines to show")
@click.option("-f", "--follow", is_flag=True, help="Follow log output")
def logs(config_path, lines, follow):
    """Show relay logs."""
    cfg = _load_config(config_path)
    log_file = cfg.log_dir / "relay.log"
    if not log_file.exists():
        click.echo("No logs yet.")
        return

    cmd = ["tail"]
    if follow:
        cmd.append("-f")
    cmd += ["-n", str(lines), str(log_file)]
    os.execvp("tail", cmd)
