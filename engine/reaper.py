from dataclasses import dataclass, field
from typing import Callable, List

from engine.registry import Connection, SessionRegistry
from engine.rooms import RoomStore, is_valid_room_id
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class SweepReport:
    rooms_removed: List[str] = field(default_factory=list)
    connections_removed: List[str] = field(default_factory=list)
    connection_count_before: int = 0
    connection_count_after: int = 0


class Reaper:
    """Periodic full sweep over rooms and connections.

    Deletes empty rooms regardless of whether a grace timer is armed, so a
    room whose timer was lost (for example across a restart) still goes away.
    """

    def __init__(self, store: RoomStore, registry: SessionRegistry, disconnect: Callable[[Connection], None]):
        self.store = store
        self.registry = registry
        self.disconnect = disconnect

    def sweep(self) -> SweepReport:
        report = SweepReport()

        for room_id, room in list(self.store.rooms.items()):
            if not is_valid_room_id(room_id) or not room.members:
                self.store.remove(room_id)
                report.rooms_removed.append(room_id)

        for connection in self.registry:
            if connection.is_closed:
                self.disconnect(connection)
                report.connections_removed.append(connection.id)

        report.connection_count_before, report.connection_count_after = self.registry.recount()

        logger.info(f"Sweep finished: removed {len(report.rooms_removed)} rooms and "
                    f"{len(report.connections_removed)} stale connections; rooms={len(self.store)}, "
                    f"connections={self.registry.connection_count}")
        return report
