"""Telegram Bot API client. Stdlib urllib, blocking.

Async code calls these methods through ``asyncio.to_thread`` so one slow
request only stalls the chat that issued it.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import secrets
import string
import tempfile
import uuid
from http.client import HTTPException
from pathlib import Path
from typing import Any, Iterable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from .errors import DownloadFileError, TelegramError, TransportError
from .models import File, InlineButton, Message, TelegramResponse, Update, inline_keyboard

log = logging.getLogger("tgpipe")

DEFAULT_API_URL = "https://api.telegram.org"

# Random names for downloaded files
_FILE_NAME_ALPHABET = string.ascii_letters + string.digits
_FILE_NAME_LENGTH = 12


class TelegramClient:
    """Thin wrapper around the Bot API for a single bot token.

    Every method either returns the unwrapped ``result`` of the response
    envelope or raises ``TransportError`` / ``TelegramError``.
    """

    def __init__(self, bot_token: str, api_url: str = DEFAULT_API_URL):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self._api_base = f"{self.api_url}/bot{bot_token}"

    def __repr__(self) -> str:
        # Never leak the token into logs
        return f"TelegramClient(api_url={self.api_url!r})"

    # -- Plumbing --

    def request(self, method: str, payload: dict, timeout: float = 40) -> Any:
        body = json.dumps(payload).encode()
        req = Request(
            f"{self._api_base}/{method}",
            data=body,
            headers={"Content-Type": "application/json"},
        )
        return self._call(method, req, timeout)

    def _call(self, method: str, req: Request, timeout: float) -> Any:
        try:
            with urlopen(req, timeout=timeout) as resp:
                raw = resp.read()
        except HTTPError as exc:
            # Rejections come back as 4xx with the envelope in the body
            raw = exc.read()
            if not raw:
                raise TransportError(f"{method}: HTTP {exc.code}") from exc
        except (URLError, OSError, HTTPException) as exc:
            raise TransportError(f"{method} failed: {exc}") from exc

        try:
            envelope = TelegramResponse.model_validate_json(raw)
        except ValidationError as exc:
            raise TransportError(f"{method}: malformed response", detail=str(exc)) from exc

        if not envelope.ok:
            raise TelegramError(envelope.description or "no description", method=method)
        assert envelope.result is not None, f"{method}: ok response without result"
        return envelope.result

    # -- Messages --

    def send_message(
        self, chat_id: int, text: str, buttons: Iterable[InlineButton] = (),
    ) -> Message:
        """Send a new text message, optionally with a one-row inline keyboard."""
        data: dict = {"chat_id": chat_id, "text": text}
        buttons = list(buttons)
        if buttons:
            data["reply_markup"] = inline_keyboard(buttons)
        return Message.model_validate(self.request("sendMessage", data))

    def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str | None = None,
        buttons: Iterable[InlineButton] = (),
    ) -> Any:
        """Replace a message's text and keyboard.

        Without text only the keyboard is replaced (editMessageReplyMarkup);
        an empty button list strips the keyboard.
        """
        data: dict = {"chat_id": chat_id, "message_id": message_id}
        buttons = list(buttons)
        if text is not None:
            data["text"] = text
            if buttons:
                data["reply_markup"] = inline_keyboard(buttons)
            return self.request("editMessageText", data)
        data["reply_markup"] = inline_keyboard(buttons)
        return self.request("editMessageReplyMarkup", data)

    def delete_message(self, chat_id: int, message_id: int) -> bool:
        return bool(self.request("deleteMessage", {
            "chat_id": chat_id,
            "message_id": message_id,
        }))

    def send_chat_action(self, chat_id: int, action: str) -> bool:
        """Set the "typing...", "uploading document..." etc. status."""
        return bool(self.request(
            "sendChatAction",
            {"chat_id": chat_id, "action": action},
            timeout=10,
        ))

    # -- Files --

    def _send_multipart(self, method: str, field_name: str, chat_id: int, file_path: str) -> Message:
        boundary = uuid.uuid4().hex
        fname = Path(file_path).name or field_name
        mime = mimetypes.guess_type(file_path)[0] or "application/octet-stream"
        with open(file_path, "rb") as f:
            file_data = f.read()

        body = (
            f"--{boundary}\r\n"
            f"Content-Disposition: form-data; name=\"chat_id\"\r\n\r\n"
            f"{chat_id}\r\n"
            f"--{boundary}\r\n"
            f"Content-Disposition: form-data; name=\"{field_name}\"; filename=\"{fname}\"\r\n"
            f"Content-Type: {mime}\r\n\r\n"
        ).encode()
        body += file_data + f"\r\n--{boundary}--\r\n".encode()

        req = Request(
            f"{self._api_base}/{method}",
            data=body,
            headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
        )
        return Message.model_validate(self._call(method, req, timeout=120))

    def send_document(self, chat_id: int, file_path: str) -> Message:
        """Upload a local file as-is."""
        return self._send_multipart("sendDocument", "document", chat_id, file_path)

    def send_photo(self, chat_id: int, file_path: str) -> Message:
        """Upload a local image; Telegram recompresses it."""
        return self._send_multipart("sendPhoto", "photo", chat_id, file_path)

    def get_file(self, file_id: str) -> File:
        return File.model_validate(self.request("getFile", {"file_id": file_id}))

    def file_url(self, file_path: str) -> str:
        return f"{self.api_url}/file/bot{self.bot_token}/{file_path}"

    def download_file(self, file_id: str, dest_dir: str | Path | None = None) -> Path:
        """Download a file into a randomly named file in the temp directory.

        The file is left for the OS to clean up. Streams in chunks to avoid
        memory spikes.
        """
        info = self.get_file(file_id)
        if not info.file_path:
            raise DownloadFileError(f"getFile returned no file_path for {file_id}")

        name = "".join(secrets.choice(_FILE_NAME_ALPHABET) for _ in range(_FILE_NAME_LENGTH))
        dest = Path(dest_dir or tempfile.gettempdir()) / name

        try:
            with urlopen(Request(self.file_url(info.file_path)), timeout=60) as resp, \
                    open(dest, "wb") as f:
                while True:
                    chunk = resp.read(8192)
                    if not chunk:
                        break
                    f.write(chunk)
        except (URLError, HTTPException) as exc:
            raise TransportError(f"download of {file_id} failed: {exc}") from exc
        log.debug("downloaded %s to %s", file_id, dest)
        return dest

    # -- Bot setup / polling --

    def set_my_commands(self, commands: list[dict]) -> bool:
        """Register bot commands menu. Each dict: {"command": "...", "description": "..."}."""
        return bool(self.request("setMyCommands", {"commands": commands}))

    def get_updates(self, offset: int, poll_timeout: int = 300) -> list[Update]:
        data = {
            "offset": offset,
            "timeout": poll_timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        result = self.request("getUpdates", data, timeout=poll_timeout + 1)
        return [Update.model_validate(u) for u in result]
