"""Dispatcher: routes chat events to per-chat actors."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable

from .actor import ChatActor
from .config import Config
from .models import Event
from .telegram import TelegramClient

log = logging.getLogger("tgpipe")

# (chat_id, inbox) -> object with an async run()
ActorFactory = Callable[[int, asyncio.Queue], Any]


class ActorHandle:
    """A running actor and the bounded queue feeding it."""

    __slots__ = ("chat_id", "queue", "actor", "task", "finished")

    def __init__(self, chat_id: int, queue: asyncio.Queue, actor: Any):
        self.chat_id = chat_id
        self.queue = queue
        self.actor = actor
        self.task: asyncio.Task | None = None
        self.finished = False

    async def deliver(self, event: Event) -> bool:
        """Enqueue ``event``, waiting while the queue is full.

        Returns False once the actor has finished; the event is then not
        queued. Checking ``finished`` and enqueueing happen in one step, so
        an event is never left behind in a dead actor's queue.
        """
        while not self.finished:
            try:
                self.queue.put_nowait(event)
                return True
            except asyncio.QueueFull:
                pass

            put = asyncio.ensure_future(self._put(event))
            try:
                await asyncio.wait({put, self.task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                put.cancel()
            if put.done() and not put.cancelled():
                return put.result()
        return False

    async def _put(self, event: Event) -> bool:
        await self.queue.put(event)
        if self.finished:
            # Queue was already drained; take the event back
            self.queue.get_nowait()
            return False
        return True

    def drain(self) -> list[Event]:
        """Take every event the actor never handed to its process."""
        leftovers = list(getattr(self.actor, "undelivered", []))
        while True:
            try:
                leftovers.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return leftovers


class Dispatcher:
    """Owns the chat -> actor table.

    Only dispatcher code touches the table, always on the event loop; actors
    never see it. Entries are removed as soon as their actor finishes.
    """

    def __init__(
        self,
        config: Config,
        tg: TelegramClient | None = None,
        actor_factory: ActorFactory | None = None,
    ):
        self.cfg = config
        self.tg = tg or TelegramClient(config.bot_token, config.api_url)
        self.allowed_chats = config.allowed_chats
        self.queue_size = config.queue_size
        self._actor_factory = actor_factory or self._make_actor
        self._actors: dict[int, ActorHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def _make_actor(self, chat_id: int, inbox: asyncio.Queue) -> ChatActor:
        return ChatActor(
            self.tg,
            chat_id,
            inbox,
            execute=self.cfg.execute,
            pipe_first_message=self.cfg.pipe_first_message,
            suppress_handler_error=self.cfg.suppress_handler_error,
        )

    # -- Routing --

    async def route(self, event: Event):
        chat_id = event.chat_id

        if self.allowed_chats and chat_id not in self.allowed_chats:
            log.warning("[%d] ignoring chat not in allowed_chats", chat_id)
            return

        log.debug("[%d] received %s", chat_id, type(event).__name__)

        while True:
            handle = self._actors.get(chat_id)
            if handle is None:
                self._spawn(chat_id, [event])
                return
            if await handle.deliver(event):
                return
            # The actor finished while we waited; its entry is gone or replaced

    def active(self) -> list[int]:
        return sorted(self._actors)

    def _spawn(self, chat_id: int, events: list[Event]) -> ActorHandle:
        log.info("[%d] spawning new handler process", chat_id)
        queue: asyncio.Queue = asyncio.Queue(maxsize=max(self.queue_size, len(events)))
        for event in events:
            queue.put_nowait(event)

        handle = ActorHandle(chat_id, queue, self._actor_factory(chat_id, queue))
        handle.task = asyncio.create_task(handle.actor.run(), name=f"chat-{chat_id}")
        self._tasks.add(handle.task)
        handle.task.add_done_callback(functools.partial(self._actor_done, handle))
        self._actors[chat_id] = handle
        return handle

    def _actor_done(self, handle: ActorHandle, task: asyncio.Task):
        """Retire a finished actor and hand on anything it never processed."""
        self._tasks.discard(task)
        handle.finished = True
        leftovers = handle.drain()

        if not task.cancelled():
            exc = task.exception()
            if exc:
                log.error("[%d] actor crashed: %s", handle.chat_id, exc, exc_info=exc)

        if self._actors.get(handle.chat_id) is not handle:
            return
        del self._actors[handle.chat_id]

        if leftovers and not task.cancelled():
            log.info("[%d] %d event(s) arrived as the handler exited", handle.chat_id, len(leftovers))
            self._spawn(handle.chat_id, leftovers)

    # -- Shutdown --

    async def shutdown(self):
        """Kill every handler and wait for the actors to wind down."""
        for handle in list(self._actors.values()):
            kill = getattr(handle.actor, "kill", None)
            if kill:
                kill()
            # Don't respawn for leftovers while shutting down
            if handle.task:
                handle.task.cancel()
        if self._tasks:
            log.info("Draining %d actor(s)", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
