import asyncio
import json
import random
import time
import uuid
from typing import Callable, Dict, Iterator, Optional

from starlette.websockets import WebSocketState

from engine.errors import ConnectionClosedError
from logging_config import get_logger

logger = get_logger(__name__)

ADJECTIVES = [
    "Brave", "Calm", "Clever", "Curious", "Eager", "Gentle", "Happy", "Honest", "Humble", "Jolly",
    "Kind", "Lively", "Lucky", "Nimble", "Patient", "Quick", "Quiet", "Sharp", "Steady", "Witty",
]
ANIMALS = [
    "Cat", "Dog", "Bird", "Tiger", "Lion", "Elephant", "Monkey", "Panda", "Squirrel", "Rabbit",
    "Fox", "Dolphin", "Whale", "Penguin", "Kangaroo", "Koala", "Butterfly", "Bee", "Ant", "Owl",
]


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_connection_id() -> str:
    return f"user_{now_ms()}_{uuid.uuid4().hex[:12]}"


def generate_display_name() -> str:
    return f"{random.choice(ADJECTIVES)}{random.choice(ANIMALS)}{random.randint(100, 999)}"


class Connection:
    """A live WebSocket session with an ephemeral identity.

    Outbound frames go through an unbounded outbox drained by ``pump()`` so
    that sending never suspends the caller.
    """

    def __init__(self, websocket, connection_id: Optional[str] = None,
                 display_name: Optional[str] = None, client_ip: str = "unknown"):
        self.websocket = websocket
        self.id = connection_id or generate_connection_id()
        self.display_name = display_name or generate_display_name()
        self.client_ip = client_ip
        self.joined_at = now_ms()
        self.room_id: Optional[str] = None
        self.is_teacher = False
        self.closed = False
        self.outbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        return (self.websocket.client_state == WebSocketState.CONNECTED
                and self.websocket.application_state == WebSocketState.CONNECTED)

    @property
    def is_closed(self) -> bool:
        # A transport that has not finished its handshake is neither open nor closed
        return (self.closed
                or self.websocket.client_state == WebSocketState.DISCONNECTED
                or self.websocket.application_state == WebSocketState.DISCONNECTED)

    def send(self, message: dict):
        if not self.is_open:
            raise ConnectionClosedError(self.id)
        self.outbox.put_nowait(json.dumps(message, ensure_ascii=False, default=str))

    def mark_closed(self):
        self.closed = True

    async def pump(self):
        """Write queued frames to the socket until it fails or the task is cancelled."""
        while True:
            text = await self.outbox.get()
            try:
                await self.websocket.send_text(text)
            except Exception as e:
                logger.debug(f"Stopping writer for connection {self.id}: {e}")
                self.mark_closed()
                return

    def __repr__(self):
        return f"<Connection {self.id} ({self.display_name})>"


class SessionRegistry:
    """Every live connection keyed by id, plus derived connection counters."""

    def __init__(self, on_unregister: Optional[Callable[[Connection], None]] = None):
        self._connections: Dict[str, Connection] = {}
        self.on_unregister = on_unregister
        self.connection_count = 0
        self.peak_connections = 0
        self.total_connections = 0

    def __len__(self):
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def register(self, connection: Connection) -> str:
        self._connections[connection.id] = connection
        self.connection_count += 1
        self.total_connections += 1
        self.peak_connections = max(self.peak_connections, self.connection_count)
        logger.info(f"Registered connection {connection.id} ({connection.display_name}) from {connection.client_ip}, "
                    f"total: {len(self._connections)}")
        return connection.id

    def unregister(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.get(connection_id)
        if connection is None:
            return None
        if connection.room_id and self.on_unregister:
            self.on_unregister(connection)
        del self._connections[connection_id]
        self.connection_count = max(0, self.connection_count - 1)
        logger.info(f"Unregistered connection {connection_id}, remaining: {len(self._connections)}")
        return connection

    def lookup(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def open_connections(self) -> list:
        return [c for c in self._connections.values() if c.is_open]

    def recount(self):
        """Reset the live connection counter from ground truth. Returns (before, after)."""
        before = self.connection_count
        self.connection_count = len(self.open_connections())
        if before != self.connection_count:
            logger.info(f"Corrected connection count: {before} -> {self.connection_count}")
        return before, self.connection_count
