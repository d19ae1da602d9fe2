from dataclasses import dataclass
from typing import Optional

from engine.errors import ConnectionClosedError
from engine.registry import Connection
from engine.rooms import RoomStore
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class BroadcastResult:
    delivered: int = 0
    failed: int = 0


class Fanout:
    def __init__(self, store: RoomStore):
        self.store = store

    def broadcast(self, room_id: str, message: dict, exclude: Optional[str] = None) -> BroadcastResult:
        """Send a personalised copy of ``message`` to every member of a room.

        A closed or failing recipient is counted and skipped; it never stops
        delivery to the others.
        """
        result = BroadcastResult()
        room = self.store.get(room_id)
        if room is None:
            logger.error(f"Attempted to broadcast {message.get('type')} to missing room {room_id}")
            return result

        for connection_id, member in list(room.members.items()):
            if exclude and connection_id == exclude:
                continue
            if not member.is_open:
                logger.debug(f"Member {connection_id} in room {room_id} is not reachable")
                result.failed += 1
                continue
            try:
                member.connection.send({
                    **message,
                    "recipientId": connection_id,
                    "recipientName": member.display_name,
                })
                result.delivered += 1
            except Exception as e:
                logger.warning(f"Error sending {message.get('type')} to {connection_id} in room {room_id}: {e}")
                result.failed += 1

        logger.debug(f"Broadcast {message.get('type')} to room {room_id}: "
                     f"delivered={result.delivered}, failed={result.failed}")
        return result

    def send(self, connection: Optional[Connection], message: dict) -> bool:
        """Direct reply to one connection. Returns False if it could not be queued."""
        if connection is None:
            return False
        try:
            connection.send(message)
            return True
        except ConnectionClosedError:
            logger.debug(f"Dropped {message.get('type')} for closed connection {connection.id}")
            return False
