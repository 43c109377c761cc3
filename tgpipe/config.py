"""Configuration loading: YAML file + environment variable overrides."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from .telegram import DEFAULT_API_URL


DEFAULT_CONFIG_DIR = Path.home() / ".config" / "tgpipe"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DEFAULTS: dict[str, Any] = {
    "telegram": {
        "bot_token": "",
        "api_url": DEFAULT_API_URL,
        "allowed_chats": [],
        "commands_file": None,
    },
    "handler": {
        "execute": "",
        "pipe_first_message": False,
        "suppress_handler_error": False,
        "queue_size": 25,
    },
    "behavior": {
        # Telegram prefers long polls over frequent reconnects
        "poll_timeout": 300,
        "max_backoff_exponent": 5,
    },
    "logging": {
        "level": "INFO",
    },
    "data_dir": str(DEFAULT_CONFIG_DIR / "data"),
}


class Config:
    """Merged configuration from YAML + env vars (+ CLI overrides)."""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_FILE
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self):
        merged = _deep_copy(DEFAULTS)

        # Load YAML if it exists
        if self._path.exists():
            with open(self._path) as f:
                file_data = yaml.safe_load(f) or {}
            _deep_merge(merged, file_data)

        # Env var overrides
        env_map = {
            "TGPIPE_BOT_TOKEN": ("telegram", "bot_token"),
            "TGPIPE_API_URL": ("telegram", "api_url"),
            "TGPIPE_COMMANDS_FILE": ("telegram", "commands_file"),
            "TGPIPE_EXECUTE": ("handler", "execute"),
            "TGPIPE_PIPE_FIRST_MESSAGE": ("handler", "pipe_first_message"),
            "TGPIPE_SUPPRESS_HANDLER_ERROR": ("handler", "suppress_handler_error"),
            "TGPIPE_LOG_LEVEL": ("logging", "level"),
            "TGPIPE_DATA_DIR": ("data_dir",),
        }
        for env_key, path in env_map.items():
            val = os.environ.get(env_key)
            if val is not None:
                _set_nested(merged, path, _coerce(val))

        self._data = merged

    def override(self, **values: Any):
        """Apply command-line overrides. ``None`` means "not given"."""
        paths = {
            "bot_token": ("telegram", "bot_token"),
            "api_url": ("telegram", "api_url"),
            "allowed_chats": ("telegram", "allowed_chats"),
            "commands_file": ("telegram", "commands_file"),
            "execute": ("handler", "execute"),
            "pipe_first_message": ("handler", "pipe_first_message"),
            "suppress_handler_error": ("handler", "suppress_handler_error"),
        }
        for key, val in values.items():
            if key not in paths:
                raise KeyError(f"unknown config override: {key}")
            if val is not None:
                _set_nested(self._data, paths[key], val)

    # -- Accessors --

    @property
    def bot_token(self) -> str:
        # Token may be numeric-looking after env coercion
        return str(self._data["telegram"]["bot_token"] or "")

    @property
    def api_url(self) -> str:
        return self._data["telegram"]["api_url"]

    @property
    def allowed_chats(self) -> set[int]:
        return {int(c) for c in self._data["telegram"]["allowed_chats"] or []}

    @property
    def commands_file(self) -> Path | None:
        val = self._data["telegram"]["commands_file"]
        return Path(val).expanduser() if val else None

    @property
    def execute(self) -> str:
        return str(self._data["handler"]["execute"] or "")

    @property
    def pipe_first_message(self) -> bool:
        return bool(self._data["handler"]["pipe_first_message"])

    @property
    def suppress_handler_error(self) -> bool:
        return bool(self._data["handler"]["suppress_handler_error"])

    @property
    def queue_size(self) -> int:
        return int(self._data["handler"]["queue_size"])

    @property
    def poll_timeout(self) -> int:
        return int(self._data["behavior"]["poll_timeout"])

    @property
    def max_backoff_exponent(self) -> int:
        return int(self._data["behavior"]["max_backoff_exponent"])

    @property
    def log_level(self) -> str:
        return str(self._data["logging"]["level"]).upper()

    @property
    def data_dir(self) -> Path:
        return Path(self._data["data_dir"]).expanduser()

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    def validate(self) -> list[str]:
        """Return list of validation errors, empty if config is valid."""
        errors = []
        if not self.bot_token:
            errors.append("telegram.bot_token is required")
        if not self.execute:
            errors.append("handler.execute is required")
        if self.queue_size < 1:
            errors.append("handler.queue_size must be at least 1")
        try:
            self.allowed_chats
        except (TypeError, ValueError):
            errors.append("telegram.allowed_chats must be a list of chat ids")
        return errors

    def raw(self) -> dict[str, Any]:
        return _deep_copy(self._data)


def _deep_copy(d: dict) -> dict:
    """Deep copy a config dict."""
    return copy.deepcopy(d)


def _deep_merge(base: dict, override: dict):
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v


def _set_nested(d: dict, keys: tuple, value):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _coerce(val: str):
    """Try to coerce string env var to int/bool."""
    if val.isdigit():
        return int(val)
    if val.lower() in ("true", "false"):
        return val.lower() == "true"
    return val
