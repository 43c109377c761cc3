"""Chat actor: one handler process per chat.

The actor spawns the handler, then loops racing two sources:

- the chat's inbound queue: each event becomes one line on handler stdin;
- handler stdout: chunks go through ``LineParser`` and every resulting item
  is applied (buffer text, send/edit/delete messages, upload files...).

The loop ends when the handler closes stdout. Any error ends this actor
only; the dispatcher spawns a fresh one for the next event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import (
    DeletedUnsentMessage,
    EditedUnsentMessage,
    RemovedInlineKeyboardForUnsetMessage,
    TgpipeError,
    log_error,
)
from .inbound import event_to_args, event_to_line
from .models import Event, InlineButton
from .protocol import (
    AddButton,
    ChatAction,
    Delete,
    DownloadFile,
    Edit,
    Item,
    LineParser,
    RemoveInlineKeyboard,
    Send,
    SendFile,
    SendPhoto,
    Text,
)
from .telegram import TelegramClient

log = logging.getLogger("tgpipe")

READ_CHUNK = 1024
FAILURE_NOTICE = "Fatal Server Error"


@dataclass
class OutboundState:
    """What the handler has written but not yet sent, plus the last sent id."""

    buffer: str = ""
    buttons: list[InlineButton] = field(default_factory=list)
    last_message_id: int | None = None

    def clear(self):
        self.buffer = ""
        self.buttons = []


class ChatActor:
    """Bridge between one chat and one handler process."""

    def __init__(
        self,
        tg: TelegramClient,
        chat_id: int,
        inbox: asyncio.Queue,
        execute: str,
        pipe_first_message: bool = False,
        suppress_handler_error: bool = False,
    ):
        self.tg = tg
        self.chat_id = chat_id
        self.inbox = inbox
        self.execute = execute
        self.pipe_first_message = pipe_first_message
        self.suppress_handler_error = suppress_handler_error
        self.state = OutboundState()
        self.proc: asyncio.subprocess.Process | None = None
        # Events taken off the queue that no handler ever saw
        self.undelivered: list[Event] = []

    # -- Lifecycle --

    async def run(self) -> None:
        argv: list[str] = []
        if not self.pipe_first_message:
            first = await self.inbox.get()
            argv = event_to_args(first, split_text=True)

        try:
            self.proc = await asyncio.create_subprocess_exec(
                self.execute, *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            log.error("[%d] unable to spawn handler %s: %s", self.chat_id, self.execute, exc)
            return
        log.info("[%d] handler started  pid=%d  argv=%s", self.chat_id, self.proc.pid, argv)

        try:
            returncode = await self._pump()
        except (TgpipeError, OSError, ValueError) as exc:
            # ValueError covers bad UTF-8 and malformed API results
            log_error(log, exc, "[%d] fatal error", self.chat_id)
            return
        finally:
            await self._release()

        await self._finish(returncode)

    def kill(self):
        """Kill the handler process if it is still running."""
        if self.proc and self.proc.returncode is None:
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass

    async def _release(self):
        """Close stdin and reap the handler, killing it if still alive."""
        proc = self.proc
        if proc is None:
            return
        if proc.stdin and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            self.kill()
            await proc.wait()

    async def _finish(self, returncode: int):
        if returncode == 0:
            log.info("[%d] handler process ended successfully", self.chat_id)
            buffer = self.state.buffer
            if buffer and buffer != "\n":
                log.debug("[%d] sending remainder of handler stdout", self.chat_id)
                try:
                    await self._call(
                        self.tg.send_message, self.chat_id, buffer, list(self.state.buttons),
                    )
                except (TgpipeError, ValueError) as exc:
                    log_error(log, exc, "[%d] error sending remainder of handler stdout", self.chat_id)
            return

        log.error("[%d] handler process terminated abnormally  status=%d", self.chat_id, returncode)
        if self.suppress_handler_error:
            return
        try:
            await self._call(
                self.tg.send_message, self.chat_id, FAILURE_NOTICE, list(self.state.buttons),
            )
        except (TgpipeError, ValueError) as exc:
            log_error(log, exc, "[%d] error sending crash notification", self.chat_id)

    # -- Event loop --

    async def _pump(self) -> int:
        """Run until the handler closes stdout; return its exit status."""
        proc = self.proc
        parser = LineParser()
        recv: asyncio.Future | None = None
        read: asyncio.Future | None = None
        # Favour the inbox on the first tie so a queued event is always
        # consumed, even by a handler that exits immediately
        read_last = True

        try:
            while True:
                if recv is None:
                    recv = asyncio.ensure_future(self.inbox.get())
                if read is None:
                    read = asyncio.ensure_future(proc.stdout.read(READ_CHUNK))

                done, _ = await asyncio.wait({recv, read}, return_when=asyncio.FIRST_COMPLETED)

                # One source per turn; on a tie, the one not serviced last time
                if recv in done and (read not in done or read_last):
                    event = recv.result()
                    recv = None
                    read_last = False
                    await self._write(event_to_line(event))
                    continue

                data = read.result()
                read = None
                read_last = True

                if not data:
                    for item in parser.close():
                        await self._apply(item)
                    proc.stdin.close()
                    return await proc.wait()

                for item in parser.feed(data):
                    await self._apply(item)
        finally:
            if recv is not None:
                if recv.done() and not recv.cancelled():
                    self.undelivered.append(recv.result())
                else:
                    recv.cancel()
            if read is not None:
                read.cancel()

    async def _write(self, line: str):
        self.proc.stdin.write(line.encode())
        await self.proc.stdin.drain()

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    # -- Directives --

    async def _apply(self, item: Item):
        state = self.state

        if isinstance(item, Text):
            state.buffer += item.line + "\n"

        elif isinstance(item, AddButton):
            state.buttons.append(item.button)

        elif isinstance(item, Send):
            if not state.buffer:
                log.warning(
                    "[%d] //send with an empty buffer; write some content to stdout first",
                    self.chat_id,
                )
                return
            msg = await self._call(
                self.tg.send_message, self.chat_id, state.buffer, list(state.buttons),
            )
            state.clear()
            state.last_message_id = msg.message_id

        elif isinstance(item, Edit):
            if state.last_message_id is None:
                raise EditedUnsentMessage()
            await self._call(
                self.tg.edit_message, self.chat_id, state.last_message_id,
                state.buffer or None, list(state.buttons),
            )
            state.clear()

        elif isinstance(item, Delete):
            if state.last_message_id is None:
                raise DeletedUnsentMessage()
            await self._call(self.tg.delete_message, self.chat_id, state.last_message_id)
            state.last_message_id = None

        elif isinstance(item, RemoveInlineKeyboard):
            if state.last_message_id is None:
                raise RemovedInlineKeyboardForUnsetMessage()
            await self._call(
                self.tg.edit_message, self.chat_id, state.last_message_id, None, [],
            )

        elif isinstance(item, SendFile):
            await self._call(self.tg.send_document, self.chat_id, item.path)

        elif isinstance(item, SendPhoto):
            await self._call(self.tg.send_photo, self.chat_id, item.path)

        elif isinstance(item, ChatAction):
            await self._call(self.tg.send_chat_action, self.chat_id, item.action)

        elif isinstance(item, DownloadFile):
            path = await self._call(self.tg.download_file, item.file_id)
            # Same turn as the directive, so it lands before any queued event
            await self._write(f"//tg-file-download {path}\n")

        else:
            raise TypeError(f"unhandled protocol item: {item!r}")
