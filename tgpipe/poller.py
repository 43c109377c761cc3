"""Long-poll loop: getUpdates -> Dispatcher.route."""

from __future__ import annotations

import asyncio
import logging

from .dispatcher import Dispatcher
from .errors import TransportError, log_error
from .models import Update, update_to_event
from .telegram import TelegramClient

log = logging.getLogger("tgpipe")


class Poller:
    """Fetch updates forever, backing off exponentially on failures."""

    def __init__(
        self,
        tg: TelegramClient,
        dispatcher: Dispatcher,
        poll_timeout: int = 300,
        max_backoff_exponent: int = 5,
    ):
        self.tg = tg
        self.dispatcher = dispatcher
        self.poll_timeout = poll_timeout
        self.max_backoff_exponent = max_backoff_exponent
        self.offset = 0
        self.failures = 0

    async def run(self):
        log.info("Polling telegram")
        while True:
            await self.poll_once()

    async def poll_once(self):
        """One getUpdates round trip; sleeps on failure instead of raising."""
        log.debug("polling  offset=%d  failures=%d", self.offset, self.failures)
        try:
            updates = await asyncio.to_thread(
                self.tg.get_updates, self.offset, self.poll_timeout,
            )
        except (TransportError, ValueError) as exc:
            delay = self.record_failure()
            log_error(log, exc, "Failed to poll telegram for updates, sleeping for %d seconds", delay)
            await asyncio.sleep(delay)
            return

        self.failures = 0
        await self.handle_updates(updates)

    def record_failure(self) -> int:
        """Count a failed poll and return the seconds to wait (2, 4 ... 2**max)."""
        self.failures = min(self.failures + 1, self.max_backoff_exponent)
        return 2 ** self.failures

    async def handle_updates(self, updates: list[Update]):
        # Telegram can deliver more than one update at a time
        for update in updates:
            self.offset = max(self.offset, update.update_id + 1)
            event = update_to_event(update)
            if event is None:
                log.warning("update %d has neither a message nor a callback", update.update_id)
                continue
            await self.dispatcher.route(event)
