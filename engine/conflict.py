from typing import Optional

from engine.broadcast import Fanout
from engine.errors import ConnectionClosedError, DomainError
from engine.registry import Connection, now_ms
from engine.rooms import Member, RoomStore
from logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_AUTHOR = "System"


class ConflictRelay:
    """Forwards a conflict signal from one member to another, by display name."""

    def __init__(self, store: RoomStore, fanout: Fanout):
        self.store = store
        self.fanout = fanout

    def find_target(self, room_id: str, display_name: str) -> Optional[Member]:
        # Names are not unique; the first live match in join order wins
        room = self.store.get(room_id)
        if room is None:
            return None
        for member in room.members.values():
            if member.display_name == display_name and member.is_open:
                return member
        return None

    def relay(self, room_id: str, sender: Connection, target_name: str,
              message: Optional[str] = None, conflict_data: Optional[dict] = None,
              original: Optional[dict] = None) -> Member:
        self.store.require(room_id)
        sender_name = sender.display_name

        target = self.find_target(room_id, target_name)
        if target is None:
            logger.warning(f"Conflict target {target_name} is not available in room {room_id}")
            raise DomainError("target unavailable", f"User {target_name} is not in the room or has gone offline")

        notice = {
            "type": "conflict_notification",
            "targetUser": target_name,
            "conflictWith": sender_name,
            "message": message or f"{sender_name} is resolving a code conflict",
            "timestamp": now_ms(),
            "conflictData": conflict_data or {},
            "originalMessage": original or {},
        }
        try:
            target.connection.send(notice)
        except ConnectionClosedError as e:
            logger.error(f"Failed to forward conflict notification to {target_name}: {e}")
            raise DomainError("conflict notification failed", str(e))

        logger.info(f"Conflict notification forwarded: {sender_name} -> {target_name} in room {room_id}")
        self.fanout.send(sender, {
            "type": "notification_sent",
            "targetUser": target_name,
            "message": "Conflict notification sent",
            "timestamp": now_ms(),
        })

        entry = self.store.append_chat(room_id, {
            "id": f"system_{now_ms()}",
            "userId": None,
            "userName": SYSTEM_AUTHOR,
            "author": SYSTEM_AUTHOR,
            "message": f"Collaboration conflict detected between {sender_name} and {target_name}",
            "timestamp": now_ms(),
            "isSystemMessage": True,
        })
        self.fanout.broadcast(room_id, {"type": "chat_message", **entry})
        return target
