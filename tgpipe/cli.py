"""CLI entry point: `tgpipe start`, `tgpipe init`, etc."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click
import yaml

from . import __version__
from .config import Config, DEFAULT_CONFIG_DIR, DEFAULT_CONFIG_FILE
from .errors import TgpipeError, log_error


def _setup_logging(log_dir: Path, level: str = "INFO"):
    log_dir.mkdir(parents=True, exist_ok=True)
    log = logging.getLogger("tgpipe")
    log.setLevel(getattr(logging, level, logging.INFO))
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = RotatingFileHandler(
        log_dir / "tgpipe.log", maxBytes=5_000_000, backupCount=2
    )
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    log.addHandler(fh)
    log.addHandler(sh)


@click.group()
@click.version_option(__version__, prog_name="tgpipe")
def main():
    """tgpipe: run a Telegram bot from any executable."""
    pass


@main.command()
def init():
    """Interactive setup: create config file."""
    click.echo("tgpipe setup\n")

    if DEFAULT_CONFIG_FILE.exists():
        if not click.confirm(f"Config already exists at {DEFAULT_CONFIG_FILE}. Overwrite?"):
            click.echo("Aborted.")
            return

    bot_token = click.prompt("Telegram Bot Token (from @BotFather)")
    execute = click.prompt("Handler executable")
    chat_ids = click.prompt(
        "Allowed chat ids, comma separated (empty = any chat)",
        default="", show_default=False,
    )

    config_data = {
        "telegram": {
            "bot_token": bot_token,
            "allowed_chats": [int(c) for c in chat_ids.split(",") if c.strip()],
        },
        "handler": {
            "execute": execute,
            "pipe_first_message": False,
            "suppress_handler_error": False,
        },
    }

    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(DEFAULT_CONFIG_FILE, "w") as f:
        yaml.dump(config_data, f, default_flow_style=False, sort_keys=False)

    click.echo(f"\nConfig written to {DEFAULT_CONFIG_FILE}")
    click.echo("Run 'tgpipe start' to begin.")


@main.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
@click.option("-e", "--execute", default=None, help="Executable to spawn for each chat")
@click.option("-b", "--bot-id", default=None, help="Bot token from @BotFather")
@click.option("--chat-id", "chat_ids", type=int, multiple=True,
              help="Only serve these chat ids (repeatable)")
@click.option("--suppress-handler-error", is_flag=True,
              help="Don't tell the chat when a handler exits non-zero")
@click.option("--tg-api-url", default=None, help="Bot API base URL")
@click.option("--pipe-first-message", is_flag=True,
              help="Send the first message on stdin instead of as arguments")
@click.option("--commands-file", default=None, type=click.Path(dir_okay=False),
              help="File listing bot commands for the menu button")
def start(config_path, execute, bot_id, chat_ids, suppress_handler_error,
          tg_api_url, pipe_first_message, commands_file):
    """Start the bridge (foreground)."""
    cfg = Config(config_path)
    cfg.override(
        execute=execute,
        bot_token=bot_id,
        allowed_chats=list(chat_ids) or None,
        suppress_handler_error=suppress_handler_error or None,
        api_url=tg_api_url,
        pipe_first_message=pipe_first_message or None,
        commands_file=commands_file,
    )
    errors = cfg.validate()
    if errors:
        click.echo("Configuration errors:", err=True)
        for e in errors:
            click.echo(f"  - {e}", err=True)
        click.echo(f"\nRun 'tgpipe init' to set up, or edit {DEFAULT_CONFIG_FILE}", err=True)
        sys.exit(1)

    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    _setup_logging(cfg.log_dir, cfg.log_level)

    click.echo(f"Starting tgpipe (handler: {cfg.execute})...")
    from .daemon import serve
    try:
        asyncio.run(serve(cfg))
    except (TgpipeError, OSError) as exc:
        log_error(logging.getLogger("tgpipe"), exc, "startup failed")
        sys.exit(1)


@main.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
def stop(config_path):
    """Stop a running tgpipe."""
    from .daemon import stop as stop_daemon
    if stop_daemon(Config(config_path)):
        click.echo("Stopped.")
    else:
        click.echo("Not running.")


@main.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
@click.option("-n", "--lines", default=50, help="Number of lines to show")
@click.option("-f", "--follow", is_flag=True, help="Follow log output")
def logs(config_path, lines, follow):
    """Show tgpipe logs."""
    cfg = Config(config_path)
    log_file = cfg.log_dir / "tgpipe.log"
    if not log_file.exists():
        click.echo("No logs yet.")
        return

    cmd = ["tail"]
    if follow:
        cmd.append("-f")
    cmd += ["-n", str(lines), str(log_file)]
    os.execvp("tail", cmd)
