"""Tests for Dispatcher: per-chat routing, respawn, backpressure, shutdown."""

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from tgpipe.actor import ChatActor
from tgpipe.dispatcher import ActorHandle, Dispatcher
from tgpipe.models import Chat, Message, MessageEvent


# -- Fakes --


class FakeActor:
    """Takes ``take`` events (None = forever), pausing on ``gate`` after each."""

    def __init__(self, chat_id, inbox, take, gate, crash=False):
        self.chat_id = chat_id
        self.inbox = inbox
        self.take = take
        self.gate = gate
        self.crash = crash
        self.seen = []
        self.undelivered = []
        self.killed = False

    async def run(self):
        while self.take is None or len(self.seen) < self.take:
            self.seen.append(await self.inbox.get())
            await self.gate.wait()
        if self.crash:
            raise RuntimeError("handler bridge blew up")

    def kill(self):
        self.killed = True


class FakeFactory:
    def __init__(self, take=None, crash=False):
        self.take = take
        self.crash = crash
        self.gate = asyncio.Event()
        self.gate.set()
        self.actors = []

    def __call__(self, chat_id, inbox):
        actor = FakeActor(chat_id, inbox, self.take, self.gate, self.crash)
        self.actors.append(actor)
        return actor

    def seen(self, chat_id=1):
        return [e for a in self.actors if a.chat_id == chat_id for e in a.seen]


def make_config(**overrides):
    values = dict(
        allowed_chats=set(),
        queue_size=25,
        execute="/bin/cat",
        pipe_first_message=False,
        suppress_handler_error=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def make_dispatcher(factory, **config):
    return Dispatcher(make_config(**config), tg=MagicMock(), actor_factory=factory)


_ids = iter(range(1, 100_000))


def event(chat_id=1, text="hi"):
    return MessageEvent(message=Message(message_id=next(_ids), chat=Chat(id=chat_id), text=text))


async def until(cond, timeout=2.0):
    async def poll():
        while not cond():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


# -- Routing --


class TestRouting:
    @pytest.mark.asyncio
    async def test_one_actor_per_chat(self):
        factory = FakeFactory()
        d = make_dispatcher(factory)
        a, b, c = event(1), event(2), event(1)
        for e in (a, b, c):
            await d.route(e)
        await until(lambda: len(factory.seen(1)) == 2 and len(factory.seen(2)) == 1)

        assert [x.chat_id for x in factory.actors] == [1, 2]
        assert factory.seen(1) == [a, c]
        assert factory.seen(2) == [b]
        assert d.active() == [1, 2]
        await d.shutdown()

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        factory = FakeFactory()
        d = make_dispatcher(factory)
        events = [event(1, text=str(i)) for i in range(20)]
        for e in events:
            await d.route(e)
        await until(lambda: len(factory.seen()) == 20)
        assert factory.seen() == events
        await d.shutdown()

    @pytest.mark.asyncio
    async def test_chat_not_allowed_is_dropped(self, caplog):
        factory = FakeFactory()
        d = make_dispatcher(factory, allowed_chats={1})
        with caplog.at_level(logging.WARNING, logger="tgpipe"):
            await d.route(event(2))
        assert factory.actors == []
        assert d.active() == []
        assert "allowed_chats" in caplog.text

    @pytest.mark.asyncio
    async def test_allowed_chat_is_served(self):
        factory = FakeFactory()
        d = make_dispatcher(factory, allowed_chats={1})
        await d.route(event(1))
        assert d.active() == [1]
        await d.shutdown()


# -- Actor exit and respawn --


class TestRespawn:
    @pytest.mark.asyncio
    async def test_finished_actor_is_removed(self):
        factory = FakeFactory(take=1)
        d = make_dispatcher(factory)
        await d.route(event(1))
        await until(lambda: d.active() == [])
        assert len(factory.actors) == 1

    @pytest.mark.asyncio
    async def test_next_event_gets_fresh_actor(self):
        factory = FakeFactory(take=1)
        d = make_dispatcher(factory)
        first, second = event(1), event(1)
        await d.route(first)
        await until(lambda: d.active() == [])
        await d.route(second)
        await until(lambda: d.active() == [])

        assert len(factory.actors) == 2
        assert factory.actors[1].seen == [second]

    @pytest.mark.asyncio
    async def test_queued_events_move_to_new_actor(self):
        factory = FakeFactory(take=1)
        factory.gate.clear()
        d = make_dispatcher(factory)
        events = [event(1) for _ in range(3)]
        for e in events:
            await d.route(e)
        await until(lambda: len(factory.seen()) == 1)

        factory.gate.set()
        await until(lambda: len(factory.seen()) == 3 and d.active() == [])
        assert factory.seen() == events
        assert len(factory.actors) == 3

    @pytest.mark.asyncio
    async def test_undelivered_event_is_replayed(self):
        factory = FakeFactory(take=1)
        d = make_dispatcher(factory)
        lost, nxt = event(1), event(1)

        make = factory.__call__

        def factory_with_loss(chat_id, inbox):
            actor = make(chat_id, inbox)
            if len(factory.actors) == 1:
                actor.undelivered.append(lost)
            return actor

        d._actor_factory = factory_with_loss
        await d.route(nxt)
        await until(lambda: len(factory.actors) == 2 and d.active() == [])
        assert factory.actors[1].seen == [lost]

    @pytest.mark.asyncio
    async def test_crashed_actor_is_logged_and_replaced(self, caplog):
        factory = FakeFactory(take=1, crash=True)
        d = make_dispatcher(factory)
        with caplog.at_level(logging.ERROR, logger="tgpipe"):
            await d.route(event(1))
            await until(lambda: d.active() == [])
        assert "actor crashed" in caplog.text

        await d.route(event(1))
        await until(lambda: d.active() == [])
        assert len(factory.actors) == 2


# -- Backpressure --


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_route_waits_for_room(self):
        factory = FakeFactory()
        factory.gate.clear()
        d = make_dispatcher(factory, queue_size=1)
        e1, e2, e3 = event(1), event(1), event(1)

        await d.route(e1)
        await until(lambda: factory.seen() == [e1])
        await d.route(e2)  # fills the queue

        blocked = asyncio.create_task(d.route(e3))
        await asyncio.sleep(0.2)
        assert not blocked.done()

        factory.gate.set()
        await asyncio.wait_for(blocked, 2)
        await until(lambda: factory.seen() == [e1, e2, e3])
        await d.shutdown()

    @pytest.mark.asyncio
    async def test_actor_exit_while_route_waits(self):
        factory = FakeFactory(take=1)
        factory.gate.clear()
        d = make_dispatcher(factory, queue_size=1)
        e1, e2, e3 = event(1), event(1), event(1)

        await d.route(e1)
        await until(lambda: factory.seen() == [e1])
        await d.route(e2)
        blocked = asyncio.create_task(d.route(e3))
        await asyncio.sleep(0.1)
        assert not blocked.done()

        factory.gate.set()
        await asyncio.wait_for(blocked, 2)
        await until(lambda: len(factory.seen()) == 3 and d.active() == [])
        assert factory.seen() == [e1, e2, e3]
        assert factory.actors[1].seen == [e2]


# -- Shutdown --


class TestShutdown:
    @pytest.mark.asyncio
    async def test_kills_and_cancels_all(self):
        factory = FakeFactory()
        d = make_dispatcher(factory)
        await d.route(event(1))
        await d.route(event(2))
        await until(lambda: len(factory.seen(1)) == 1 and len(factory.seen(2)) == 1)

        await d.shutdown()
        assert all(a.killed for a in factory.actors)
        assert d.active() == []

    @pytest.mark.asyncio
    async def test_no_respawn_for_queued_events(self):
        factory = FakeFactory()
        factory.gate.clear()
        d = make_dispatcher(factory)
        await d.route(event(1))
        await d.route(event(1))
        await until(lambda: len(factory.seen()) == 1)

        await d.shutdown()
        await asyncio.sleep(0.05)
        assert len(factory.actors) == 1
        assert d.active() == []

    @pytest.mark.asyncio
    async def test_shutdown_with_no_actors(self):
        d = make_dispatcher(FakeFactory())
        await d.shutdown()


class TestActorHandle:
    @staticmethod
    async def settle(turns=10):
        for _ in range(turns):
            await asyncio.sleep(0)

    @staticmethod
    async def stop(handle):
        handle.task.cancel()
        await asyncio.gather(handle.task, return_exceptions=True)

    def full_handle(self, first):
        queue = asyncio.Queue(maxsize=1)
        queue.put_nowait(first)
        handle = ActorHandle(1, queue, SimpleNamespace(undelivered=[]))
        handle.task = asyncio.create_task(asyncio.Event().wait())
        return handle

    @pytest.mark.asyncio
    async def test_blocked_delivery_wakes_when_room_frees(self):
        e1, e2 = event(1), event(1)
        handle = self.full_handle(e1)
        pending = asyncio.create_task(handle.deliver(e2))
        await self.settle()
        assert not pending.done()

        assert handle.queue.get_nowait() is e1
        # No timer involved: a few loop turns are enough
        await self.settle()
        assert pending.done() and pending.result() is True
        assert handle.queue.get_nowait() is e2
        await self.stop(handle)

    @pytest.mark.asyncio
    async def test_event_taken_back_from_drained_queue(self):
        e1, e2 = event(1), event(1)
        handle = self.full_handle(e1)
        pending = asyncio.create_task(handle.deliver(e2))
        await self.settle()

        # What the dispatcher does when the actor task ends
        handle.finished = True
        assert handle.drain() == [e1]
        await self.settle()

        assert pending.done() and pending.result() is False
        assert handle.queue.empty()
        await self.stop(handle)

    @pytest.mark.asyncio
    async def test_cancelled_delivery_leaves_queue_alone(self):
        e1, e2 = event(1), event(1)
        handle = self.full_handle(e1)
        pending = asyncio.create_task(handle.deliver(e2))
        await self.settle()

        pending.cancel()
        await self.settle()
        assert handle.queue.get_nowait() is e1
        await self.settle()
        assert handle.queue.empty()
        await self.stop(handle)


class TestDefaultActor:
    def test_make_actor_from_config(self):
        cfg = make_config(execute="/usr/bin/handler", pipe_first_message=True,
                          suppress_handler_error=True)
        tg = MagicMock()
        d = Dispatcher(cfg, tg=tg)
        inbox = asyncio.Queue()
        actor = d._make_actor(7, inbox)

        assert isinstance(actor, ChatActor)
        assert actor.tg is tg
        assert actor.chat_id == 7
        assert actor.inbox is inbox
        assert actor.execute == "/usr/bin/handler"
        assert actor.pipe_first_message
        assert actor.suppress_handler_error
