"""Daemon wiring: PID file, command menu, poll loop, signal shutdown."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path

from .commands import register_commands
from .config import Config
from .dispatcher import Dispatcher
from .poller import Poller
from .telegram import TelegramClient

log = logging.getLogger("tgpipe")


def pid_file(cfg: Config) -> Path:
    return cfg.data_dir / "tgpipe.pid"


def read_pid(cfg: Config) -> int | None:
    """PID of a running daemon, or None. Removes a stale PID file."""
    path = pid_file(cfg)
    if not path.exists():
        return None
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)  # Check if process is alive
        return pid
    except (ValueError, ProcessLookupError):
        path.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Alive, owned by someone else
        return pid


def acquire_pid(cfg: Config) -> bool:
    """Write PID file. Returns False if another instance is running.

    Two pollers on one bot token make getUpdates fail with 409 Conflict.
    """
    old_pid = read_pid(cfg)
    if old_pid is not None and old_pid != os.getpid():
        log.error("Another tgpipe is running (pid %d)", old_pid)
        return False
    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    pid_file(cfg).write_text(str(os.getpid()))
    return True


def release_pid(cfg: Config):
    path = pid_file(cfg)
    try:
        if path.exists() and int(path.read_text().strip()) == os.getpid():
            path.unlink()
    except (OSError, ValueError):
        pass


def stop(cfg: Config, timeout: float = 5.0) -> bool:
    """Stop a running daemon. Returns True if it was running.

    Sends SIGTERM first, then SIGKILL after timeout.
    """
    pid = read_pid(cfg)
    if not pid:
        return False

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
            time.sleep(0.3)
        except ProcessLookupError:
            break
    else:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    pid_file(cfg).unlink(missing_ok=True)
    return True


async def serve(cfg: Config):
    """Run the bridge until SIGINT/SIGTERM."""
    log.info("tgpipe starting  handler=%s", cfg.execute)
    if not acquire_pid(cfg):
        log.error("Aborting: another instance is already running")
        return

    tg = TelegramClient(cfg.bot_token, cfg.api_url)
    dispatcher = Dispatcher(cfg, tg)
    poller = Poller(tg, dispatcher, cfg.poll_timeout, cfg.max_backoff_exponent)

    try:
        if cfg.commands_file:
            log.info("Setting bot commands from %s", cfg.commands_file)
            await asyncio.to_thread(register_commands, tg, cfg.commands_file)

        task = asyncio.create_task(poller.run(), name="poller")
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, task.cancel)

        try:
            await task
        except asyncio.CancelledError:
            log.info("Shutdown signal")
    finally:
        await dispatcher.shutdown()
        release_pid(cfg)
        log.info("tgpipe stopped")
