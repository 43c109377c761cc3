"""Handler stdout protocol.

Handlers talk to the bridge by printing lines. Plain lines are message text;
lines starting with ``//`` followed by a known directive name are commands:

    //send                       send the buffered text as a new message
    //edit                       replace the last sent message with the buffer
    //delete                     delete the last sent message
    //remove-inline-keyboard     strip buttons from the last sent message
    //inline-button KIND DATA LABEL
                                 add a button (KIND is url or callback)
    //send-file PATH             upload a file
    //send-photo PATH            upload an image (recompressed by Telegram)
    //chat-action ACTION         show "typing..." and friends
    //download-file FILE_ID      fetch an upload; the local path is written
                                 back to stdin as //tg-file-download PATH
    //heredoc TERMINATOR         following lines are literal text up to the
                                 first line starting with TERMINATOR

``LineParser`` turns raw stdout chunks into a stream of ``Item`` values.
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Union

from .errors import (
    InlineButtonExpectedData,
    InlineButtonExpectedKind,
    InvalidInlineButtonKind,
    UnclosedHeredoc,
)
from .models import ButtonKind, InlineButton

log = logging.getLogger("tgpipe")

MARKER = "//"


# -- Items --


@dataclass(frozen=True)
class Text:
    """A literal line of message text (without its newline)."""

    line: str


@dataclass(frozen=True)
class SendFile:
    path: str


@dataclass(frozen=True)
class SendPhoto:
    path: str


@dataclass(frozen=True)
class ChatAction:
    action: str


@dataclass(frozen=True)
class DownloadFile:
    file_id: str


@dataclass(frozen=True)
class AddButton:
    button: InlineButton


@dataclass(frozen=True)
class Send:
    pass


@dataclass(frozen=True)
class Edit:
    pass


@dataclass(frozen=True)
class Delete:
    pass


@dataclass(frozen=True)
class RemoveInlineKeyboard:
    pass


Item = Union[
    Text, SendFile, SendPhoto, ChatAction, DownloadFile,
    AddButton, Send, Edit, Delete, RemoveInlineKeyboard,
]


# -- Argument scanning --


def split_quoted(text: str) -> tuple[str, str] | None:
    """Take the first space-separated argument off ``text``.

    An argument is a bare run of non-space characters or a double-quoted
    span; a backslash escapes the next character. Quotes and escaping
    backslashes are not part of the returned argument. Returns the argument
    and the rest of the string (starting at the separating space), or None
    if there is no argument.

        split_quoted('first second')          -> ('first', ' second')
        split_quoted('"first with spaces" x') -> ('first with spaces', ' x')
    """
    text = text.lstrip()

    segment: list[str] = []
    escaping = False
    quoting = False
    for index, ch in enumerate(text):
        if escaping:
            escaping = False
            segment.append(ch)
        elif ch == "\\":
            escaping = True
        elif ch == '"':
            quoting = not quoting
        elif ch == " " and not quoting:
            return "".join(segment), text[index:]
        else:
            segment.append(ch)

    if segment:
        return "".join(segment), ""
    return None


def _inline_button(value: str) -> AddButton:
    token = split_quoted(value)
    if token is None:
        raise InlineButtonExpectedKind()
    kind, rest = token

    token = split_quoted(rest)
    if token is None:
        raise InlineButtonExpectedData()
    data, rest = token

    try:
        button_kind = ButtonKind(kind)
    except ValueError:
        raise InvalidInlineButtonKind(kind) from None
    return AddButton(InlineButton(kind=button_kind, data=data, label=rest.strip()))


_DIRECTIVES: dict[str, Callable[[str], Item]] = {
    "send-file": lambda value: SendFile(value),
    "send-photo": lambda value: SendPhoto(value),
    "chat-action": lambda value: ChatAction(value),
    "download-file": lambda value: DownloadFile(value),
    "inline-button": _inline_button,
    "send": lambda _value: Send(),
    "edit": lambda _value: Edit(),
    "delete": lambda _value: Delete(),
    "remove-inline-keyboard": lambda _value: RemoveInlineKeyboard(),
}


# -- Parser --


class LineParser:
    """Incremental parser for one handler's stdout.

    Holds the undecoded tail of a multi-byte character, the current partial
    line, and the heredoc terminator while inside a heredoc. Items are
    produced lazily; the caller must drain each returned iterator before
    feeding more data.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")("strict")
        self._partial = ""
        self._terminator: str | None = None

    @property
    def in_heredoc(self) -> bool:
        return self._terminator is not None

    def feed(self, data: bytes) -> Iterator[Item]:
        """Consume a chunk of stdout. Raises UnicodeDecodeError on bad UTF-8."""
        text = self._partial + self._decoder.decode(data)
        *lines, self._partial = text.split("\n")
        return self._parse(lines)

    def close(self) -> Iterator[Item]:
        """Flush at end of stream; the final iterator raises UnclosedHeredoc
        if the stream ended inside a heredoc."""
        tail = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return self._finish([tail] if tail else [])

    def _finish(self, lines: list[str]) -> Iterator[Item]:
        yield from self._parse(lines)
        if self._terminator is not None:
            raise UnclosedHeredoc()

    def _parse(self, lines: Iterable[str]) -> Iterator[Item]:
        for line in lines:
            if line.endswith("\r"):
                line = line[:-1]
            item = self._line(line)
            if item is not None:
                yield item

    def _line(self, line: str) -> Item | None:
        if self._terminator is not None:
            if line.startswith(self._terminator):
                log.debug("heredoc %r closed", self._terminator)
                self._terminator = None
                return None
            return Text(line)

        if not line.startswith(MARKER):
            return Text(line)

        rest = line[len(MARKER):]
        parts = rest.split(None, 1)
        # the name must follow the marker directly: "// send" is text
        name = parts[0] if parts and not rest[:1].isspace() else ""
        value = parts[1].strip() if len(parts) > 1 else ""

        if name == "heredoc":
            log.debug("heredoc %r opened", value)
            self._terminator = value
            return None

        build = _DIRECTIVES.get(name)
        if build is None:
            return Text(line)
        log.debug("received //%s", name)
        return build(value)
