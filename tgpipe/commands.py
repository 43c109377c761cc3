"""Bot command menu from a static file.

One command per line: the command (no leading slash), a space, then its
description. Telegram uses the list to build the app's menu button.

    hello   Greet the user
    mc      Minecraft server status
"""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import CommandsFileEmpty, InvalidCommandLine
from .telegram import TelegramClient

log = logging.getLogger("tgpipe")


def parse_commands(text: str) -> list[dict]:
    commands = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        command, sep, description = line.partition(" ")
        command, description = command.strip(), description.strip()
        if not sep or not command or not description:
            raise InvalidCommandLine(line_no)
        commands.append({"command": command, "description": description})

    if not commands:
        raise CommandsFileEmpty()
    return commands


def register_commands(tg: TelegramClient, path: str | Path) -> list[dict]:
    """Read the commands file and send it to setMyCommands."""
    commands = parse_commands(Path(path).read_text())
    tg.set_my_commands(commands)
    log.info("Registered %d bot command(s) from %s", len(commands), path)
    return commands
