"""Turn chat events into handler arguments.

Everything that reaches a handler is either sanitized user text or one of
the bridge's own ``//tg-*`` pseudo-commands:

    //tg-callback DATA
    //tg-document --file-id ID [--file-name NAME] [--mime-type TYPE/SUBTYPE]
    //tg-photo ID W H [ID W H ...]          (smallest first)
    //tg-file-download PATH                 (reply to //download-file)
    //tg-unknown
"""

from __future__ import annotations

import logging
import re

from .models import CallbackEvent, Document, Event, MessageEvent, PhotoSize

log = logging.getLogger("tgpipe")

_FILE_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")

# RFC 2045 token characters
_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z\-]+"
_QUOTED = r'"(?:[^"\\]|\\.)*"'
# Each parameter is token=token or token="quoted string"
_PARAM = rf"\s*;\s*{_TOKEN}=(?:{_TOKEN}|{_QUOTED})"
_MIME = re.compile(rf"\s*({_TOKEN})/({_TOKEN})(?:{_PARAM})*\s*", re.DOTALL)


def safe_text(text: str) -> str:
    """Collapse a leading run of '/' into a single '/'.

    Stops a chat participant from impersonating the bridge to the handler,
    e.g. by sending ``//tg-document ...``.
    """
    while text.startswith("//"):
        text = text[1:]
    return text


def clean_file_name(name: str) -> str:
    """Keep only [A-Za-z0-9_.-] so the value is one safe argument."""
    return _FILE_NAME_UNSAFE.sub("", name)


def mime_essence(value: str) -> str | None:
    """Parse a MIME type and return ``type/subtype`` without parameters.

    Returns None for anything that doesn't parse.
    """
    m = _MIME.fullmatch(value)
    if not m:
        return None
    return f"{m.group(1)}/{m.group(2)}".lower()


def _document_args(document: Document) -> list[str]:
    args = ["//tg-document", "--file-id", clean_file_name(document.file_id)]

    if document.file_name:
        args += ["--file-name", clean_file_name(document.file_name)]

    if document.mime_type:
        essence = mime_essence(document.mime_type)
        if essence:
            args += ["--mime-type", essence]

    return args


def _photo_args(sizes: list[PhotoSize]) -> list[str]:
    args = ["//tg-photo"]
    for size in sorted(sizes, key=lambda s: s.width * s.height):
        args += [clean_file_name(size.file_id), str(size.width), str(size.height)]
    return args


def event_to_args(event: Event, split_text: bool = False) -> list[str]:
    """Convert an event into an argument vector.

    With ``split_text`` message text is split on whitespace, which is how the
    first message becomes the handler's command line. Otherwise the text is
    a single argument.
    """
    if isinstance(event, CallbackEvent):
        return ["//tg-callback", event.callback.data]

    if isinstance(event, MessageEvent):
        msg = event.message
        if msg.text is not None:
            text = safe_text(msg.text)
            return text.split() if split_text else [text]
        if msg.document is not None:
            return _document_args(msg.document)
        if msg.photo:
            return _photo_args(msg.photo)
        log.error("[%d] unknown message type", msg.chat.id)
    else:
        log.error("unknown event %r", event)

    return ["//tg-unknown"]


def event_to_line(event: Event) -> str:
    """Render an event as one stdin line for a running handler.

    Text spanning several lines keeps its newlines; each continuation line
    is sanitized like the first so it can't pose as a bridge command.
    """
    first, *rest = " ".join(event_to_args(event, split_text=False)).split("\n")
    return "\n".join([first] + [safe_text(part) for part in rest]) + "\n"
