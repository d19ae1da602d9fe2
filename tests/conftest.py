import asyncio
import json

import pytest
from starlette.websockets import WebSocketState

from backend import FileBackend
from engine.core import RoomEngine
from engine.registry import Connection


class FakeWebSocket:
    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent = []

    async def send_text(self, text):
        self.sent.append(text)

    def drop(self):
        self.client_state = WebSocketState.DISCONNECTED


class FakeCall:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Records timers instead of arming them; tests fire them explicitly."""

    def __init__(self):
        self.calls = []

    def call_later(self, delay, callback, *args):
        call = FakeCall(delay, callback, args)
        self.calls.append(call)
        return call

    def every(self, interval, callback, *args):
        return self.call_later(interval, callback, *args)

    def cancel_all(self):
        for call in self.calls:
            call.cancel()

    def fire_pending(self):
        pending, self.calls = self.calls, []
        return [call.callback(*call.args) for call in pending if not call.cancelled]


def make_connection(name=None):
    return Connection(FakeWebSocket(), display_name=name)


def drain(connection):
    """Pop every queued outbound frame as a dict."""
    messages = []
    while not connection.outbox.empty():
        messages.append(json.loads(connection.outbox.get_nowait()))
    return messages


def send(engine, connection, payload):
    engine.receive(connection, json.dumps(payload))


async def next_message(connection, message_type, timeout=15):
    """Wait for the next outbound frame of ``message_type``, skipping others."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        text = await asyncio.wait_for(connection.outbox.get(), timeout=max(remaining, 0.01))
        message = json.loads(text)
        if message["type"] == message_type:
            return message


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def backend(tmp_path):
    return FileBackend(path=str(tmp_path / "collaboration_data.json"))


@pytest.fixture
def engine(backend, scheduler):
    return RoomEngine(backend=backend, scheduler=scheduler, grace_period=120)


@pytest.fixture
def joined(engine):
    """Alice and Bob connected and joined to room r1, with outboxes emptied."""
    alice, bob = make_connection(), make_connection()
    engine.connect(alice)
    engine.connect(bob)
    send(engine, alice, {"type": "join_room", "room": "r1", "userName": "Alice"})
    send(engine, bob, {"type": "join_room", "room": "r1", "userName": "Bob"})
    drain(alice)
    drain(bob)
    return alice, bob
