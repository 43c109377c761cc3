"""Error types for tgpipe.

Every failure a chat actor can hit is one of these. Actor-local errors end
that actor only; the dispatcher and the poll loop keep running.
"""

from __future__ import annotations

import logging
from enum import Enum


class Severity(str, Enum):
    """Error severity levels."""

    WARNING = "warning"
    ERROR = "error"


class TgpipeError(Exception):
    """Base exception for all tgpipe errors."""

    severity: Severity = Severity.ERROR

    def __init__(self, message: str = "", *, detail: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.detail = detail


class ConfigError(TgpipeError):
    """Configuration is missing or malformed."""

    severity = Severity.WARNING


# -- Transport --


class TransportError(TgpipeError):
    """Network-level failure talking to the Bot API."""


class TelegramError(TransportError):
    """The Bot API answered with ok=false."""

    def __init__(self, description: str, *, method: str = ""):
        super().__init__(description, detail=method)
        self.description = description
        self.method = method


class DownloadFileError(TransportError):
    """getFile returned no file_path, so the file can't be downloaded."""


# -- Handler protocol --


class ProtocolError(TgpipeError):
    """The handler process wrote output the bridge can't act on."""


class UnclosedHeredoc(ProtocolError):
    """Handler closed stdout inside a //heredoc block."""


class EditedUnsentMessage(ProtocolError):
    """//edit before any message was sent."""


class DeletedUnsentMessage(ProtocolError):
    """//delete before any message was sent."""


class RemovedInlineKeyboardForUnsetMessage(ProtocolError):
    """//remove-inline-keyboard before any message was sent."""


class InlineButtonExpectedKind(ProtocolError):
    """//inline-button is missing the button kind."""


class InlineButtonExpectedData(ProtocolError):
    """//inline-button is missing the url or callback data."""


class InvalidInlineButtonKind(ProtocolError):
    """//inline-button kind is neither 'url' nor 'callback'."""

    def __init__(self, kind: str):
        super().__init__(f"invalid inline button kind: {kind!r}")
        self.kind = kind


# -- Commands file --


class CommandsFileError(ConfigError):
    """The bot commands file can't be used."""

    severity = Severity.ERROR


class CommandsFileEmpty(CommandsFileError):
    """The commands file has no commands."""


class InvalidCommandLine(CommandsFileError):
    """A commands file line is not '<command> <description>'."""

    def __init__(self, line_no: int):
        super().__init__(f"invalid command on line {line_no}")
        self.line_no = line_no


# -- Logging --


def log_error(logger: logging.Logger, error: BaseException, msg: str, *args) -> None:
    """Log ``error`` at the level its severity maps to.

    Exceptions outside the tgpipe hierarchy log at ERROR. A non-empty
    ``detail`` follows at DEBUG.
    """
    severity = getattr(error, "severity", Severity.ERROR)
    level = getattr(logging, severity.value.upper(), logging.ERROR)
    logger.log(level, msg + " (%s: %s)", *args, type(error).__name__, error)
    detail = getattr(error, "detail", "")
    if detail:
        logger.debug("%s detail: %s", type(error).__name__, detail)
