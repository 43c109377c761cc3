"""Pydantic models for the Bot API objects tgpipe reads and writes.

Only the fields the bridge uses are declared; everything else Telegram sends
is ignored. Fields that come straight from the chat participant (file name,
MIME type) are kept under their wire names but must be sanitized before they
reach a handler process.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field


class TelegramResponse(BaseModel):
    """Envelope returned by every Bot API method.

    ``result`` is present iff ``ok`` is true; ``description`` iff it is false.
    """

    ok: bool
    description: str | None = None
    result: Any = None


class Chat(BaseModel):
    id: int


class Document(BaseModel):
    """A generic file upload (may also be an uncompressed image)."""

    file_id: str
    file_name: str | None = Field(default=None, description="Untrusted, user supplied")
    mime_type: str | None = Field(default=None, description="Untrusted, user supplied")


class PhotoSize(BaseModel):
    """One resolution variant of an uploaded photo."""

    file_id: str
    width: int
    height: int


class Message(BaseModel):
    message_id: int
    chat: Chat
    text: str | None = None
    document: Document | None = None
    photo: list[PhotoSize] | None = None


class CallbackQuery(BaseModel):
    """The user tapped an inline keyboard button."""

    id: str
    data: str = ""
    message: Message


class File(BaseModel):
    """Result of getFile. ``file_path`` is the temporary download path."""

    file_id: str = ""
    file_path: str | None = None


class Update(BaseModel):
    update_id: int
    message: Message | None = None
    callback_query: CallbackQuery | None = None


# -- Inbound events --


class MessageEvent(BaseModel):
    """A regular message from the chat."""

    message: Message

    @property
    def chat_id(self) -> int:
        return self.message.chat.id


class CallbackEvent(BaseModel):
    """An inline keyboard tap."""

    callback: CallbackQuery

    @property
    def chat_id(self) -> int:
        return self.callback.message.chat.id


Event = Union[MessageEvent, CallbackEvent]


def update_to_event(update: Update) -> Event | None:
    """Pick the event out of an update, or None if it carries neither kind."""
    if update.message is not None:
        return MessageEvent(message=update.message)
    if update.callback_query is not None:
        return CallbackEvent(callback=update.callback_query)
    return None


# -- Outbound --


class ButtonKind(str, Enum):
    URL = "url"
    CALLBACK = "callback"


class InlineButton(BaseModel):
    """One button of a single-row inline keyboard."""

    kind: ButtonKind
    data: str
    label: str

    def to_api(self) -> dict[str, str]:
        if self.kind is ButtonKind.URL:
            return {"text": self.label, "url": self.data}
        return {"text": self.label, "callback_data": self.data}


def inline_keyboard(buttons: list[InlineButton]) -> dict:
    """Build a reply_markup with all buttons on one row."""
    row = [b.to_api() for b in buttons]
    return {"inline_keyboard": [row] if row else []}
