"""
Room store and document synchronization.

Rooms live only in this process. Every method here is synchronous and is
called from the dispatcher's single worker, so a read-modify-write of a
room's version or member map is never interleaved with another message.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from constants import MAX_ROOMS, MAX_SAVE_HISTORY, MAX_USERS_PER_ROOM, ROOM_GRACE_PERIOD
from engine.errors import DomainError
from engine.registry import Connection, now_ms
from logging_config import get_logger

logger = get_logger(__name__)

INVALID_ROOM_IDS = {"", "null", "undefined", "none"}


def is_valid_room_id(room_id) -> bool:
    return isinstance(room_id, str) and room_id.strip().lower() not in INVALID_ROOM_IDS


@dataclass
class Member:
    connection_id: str
    display_name: str
    connection: Optional[Connection] = None
    cursor: Optional[object] = None
    is_active: bool = True
    joined_at: int = field(default_factory=now_ms)

    @property
    def is_open(self) -> bool:
        return self.connection is not None and self.connection.is_open

    def to_public(self) -> dict:
        return {"userId": self.connection_id, "userName": self.display_name, "isActive": self.is_active}

    def to_record(self) -> dict:
        return {
            "userId": self.connection_id,
            "userName": self.display_name,
            "cursor": self.cursor,
            "isActive": self.is_active,
            "joinTime": self.joined_at,
        }


@dataclass
class Room:
    id: str
    code: str = ""
    version: int = 0
    chat_history: List[dict] = field(default_factory=list)
    members: Dict[str, Member] = field(default_factory=dict)
    save_history: List[dict] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    last_activity: int = field(default_factory=now_ms)
    last_edited_by: Optional[str] = None
    deletion_handle: Optional[object] = None

    def live_members(self) -> List[Member]:
        return [m for m in self.members.values() if m.is_open]

    def member_list(self) -> List[dict]:
        return [m.to_public() for m in self.live_members()]

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "version": self.version,
            "chatHistory": list(self.chat_history),
            "codeHistory": list(self.save_history),
            "users": [[cid, m.to_record()] for cid, m in self.members.items()],
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "lastEditedBy": self.last_edited_by,
        }

    @classmethod
    def from_record(cls, room_id: str, data: dict) -> "Room":
        # Restored members have no transport, so they are not carried over
        return cls(
            id=room_id,
            code=data.get("code") or "",
            version=int(data.get("version") or 0),
            chat_history=list(data.get("chatHistory") or []),
            save_history=list(data.get("codeHistory") or []),
            created_at=data.get("createdAt") or now_ms(),
            last_activity=data.get("lastActivity") or now_ms(),
            last_edited_by=data.get("lastEditedBy"),
        )


@dataclass
class JoinResult:
    room: Room
    document: str
    version: int
    members: List[dict]
    chat_history: List[dict]
    is_reconnect: bool


@dataclass
class LoadResult:
    document: str
    version: int
    is_already_latest: bool


class RoomStore:
    def __init__(self, scheduler=None, grace_period: float = ROOM_GRACE_PERIOD / 1000,
                 history_cap: Optional[int] = MAX_SAVE_HISTORY, max_rooms: int = MAX_ROOMS,
                 max_members: int = MAX_USERS_PER_ROOM,
                 on_room_deleted: Optional[Callable[[str], None]] = None):
        self.rooms: Dict[str, Room] = {}
        self.scheduler = scheduler
        self.grace_period = grace_period
        self.history_cap = history_cap
        self.max_rooms = max_rooms
        self.max_members = max_members
        self.on_room_deleted = on_room_deleted

    def __len__(self):
        return len(self.rooms)

    def get(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def require(self, room_id: Optional[str]) -> Room:
        room = self.rooms.get(room_id) if room_id else None
        if room is None:
            raise DomainError("room_not_found", f"Room {room_id} does not exist")
        return room

    def get_or_create(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(id=room_id)
            self.rooms[room_id] = room
            logger.info(f"Created room {room_id} (rooms: {len(self.rooms)})")
        return room

    def purge_stale_members(self, room: Room) -> List[str]:
        stale = [cid for cid, m in room.members.items() if not m.is_open]
        for cid in stale:
            del room.members[cid]
            logger.debug(f"Purged stale member {cid} from room {room.id}")
        return stale

    def join(self, room_id: str, connection: Connection, display_name: str) -> JoinResult:
        room = self.rooms.get(room_id)
        if room is None and len(self.rooms) >= self.max_rooms:
            raise DomainError("too_many_rooms", f"The server already hosts {self.max_rooms} rooms",
                              reply_type="join_room_error")

        if room is not None:
            self.purge_stale_members(room)
            if connection.id not in room.members and len(room.members) >= self.max_members:
                raise DomainError("room_full", f"Room {room_id} is full ({self.max_members} users)",
                                  reply_type="join_room_error")
        room = self.get_or_create(room_id)

        existing = room.members.get(connection.id)
        is_reconnect = existing is not None and existing.display_name == display_name

        room.members[connection.id] = Member(
            connection_id=connection.id,
            display_name=display_name,
            connection=connection,
        )
        room.last_activity = now_ms()
        connection.room_id = room_id
        connection.display_name = display_name

        logger.info(f"{display_name} {'reconnected to' if is_reconnect else 'joined'} room {room_id} "
                    f"({len(room.members)} members)")
        return JoinResult(
            room=room,
            document=room.code,
            version=room.version,
            members=room.member_list(),
            chat_history=list(room.chat_history),
            is_reconnect=is_reconnect,
        )

    def leave(self, room_id: str, connection_id: str) -> Optional[Member]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        member = room.members.pop(connection_id, None)
        if member is None:
            return None
        room.last_activity = now_ms()
        logger.info(f"{member.display_name} left room {room_id} ({len(room.members)} members)")
        if not room.members:
            self._arm_deletion(room)
        return member

    def _arm_deletion(self, room: Room):
        if self.scheduler is None:
            return
        if room.deletion_handle is not None:
            room.deletion_handle.cancel()
        logger.info(f"Room {room.id} is empty, deleting in {self.grace_period}s unless someone rejoins")
        room.deletion_handle = self.scheduler.call_later(self.grace_period, self.delete_if_empty, room.id)

    def delete_if_empty(self, room_id: str) -> bool:
        room = self.rooms.get(room_id)
        if room is None or room.members:
            return False
        self.remove(room_id)
        return True

    def remove(self, room_id: str) -> Optional[Room]:
        room = self.rooms.pop(room_id, None)
        if room is None:
            return None
        if room.deletion_handle is not None:
            room.deletion_handle.cancel()
            room.deletion_handle = None
        logger.info(f"Deleted room {room_id} (rooms: {len(self.rooms)})")
        if self.on_room_deleted:
            self.on_room_deleted(room_id)
        return room

    def apply_mutation(self, room_id: str, document: str, author: str) -> int:
        room = self.require(room_id)
        room.code = document
        room.version += 1
        room.last_edited_by = author
        room.last_activity = now_ms()
        return room.version

    def load_latest(self, room_id: str, client_version: int) -> LoadResult:
        room = self.require(room_id)
        return LoadResult(
            document=room.code,
            version=room.version,
            is_already_latest=client_version >= room.version,
        )

    def save_named(self, room_id: str, document: str, save_name: Optional[str], author: str) -> dict:
        """Advance the version like ``apply_mutation`` and record a named save entry."""
        version = self.apply_mutation(room_id, document, author)
        room = self.rooms[room_id]
        timestamp = room.last_activity
        entry = {
            "code": document,
            "version": version,
            "saveName": save_name or f"Save-{datetime.fromtimestamp(timestamp / 1000).strftime('%Y-%m-%d %H:%M:%S')}",
            "timestamp": timestamp,
            "savedBy": author,
        }
        room.save_history.append(entry)
        if self.history_cap and len(room.save_history) > self.history_cap:
            del room.save_history[:-self.history_cap]
        return entry

    def append_chat(self, room_id: str, entry: dict) -> dict:
        room = self.require(room_id)
        room.chat_history.append(entry)
        room.last_activity = now_ms()
        return entry

    def set_cursor(self, room_id: str, connection_id: str, cursor):
        room = self.require(room_id)
        member = room.members.get(connection_id)
        if member is not None:
            member.cursor = cursor

    def to_snapshot(self, version: str) -> dict:
        return {
            "timestamp": now_ms(),
            "version": version,
            "rooms": [[room_id, room.to_record()] for room_id, room in self.rooms.items()],
        }

    def restore(self, snapshot: dict) -> int:
        restored = 0
        for pair in snapshot.get("rooms") or []:
            try:
                room_id, data = pair
            except (TypeError, ValueError):
                logger.warning(f"Skipping malformed room entry in snapshot: {pair!r}")
                continue
            if not is_valid_room_id(room_id) or not isinstance(data, dict):
                continue
            self.rooms[room_id] = Room.from_record(room_id, data)
            restored += 1
        logger.info(f"Restored {restored} rooms from snapshot taken at {snapshot.get('timestamp')}")
        return restored
