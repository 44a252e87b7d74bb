from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
import logging
import uuid

logger = logging.getLogger(__name__)


@dataclass
class Room:
    room_id: str
    participants: Set[str] = field(default_factory=set)
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RoomRegistry:
    """Room id -> participant ids.

    Rooms never outlive their last participant: the removal that empties a
    room deletes it. Lookups for unknown rooms return empty results instead
    of raising, signaling traffic is fire-and-forget.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self.rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self.rooms

    def ensure(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id)
            self.rooms[room_id] = room
            logger.info(f"Created room {room_id}")
        return room

    def create(self) -> Room:
        """Allocate a fresh room id and create the room

        The only path that leaves an empty room behind: it is deleted once
        a participant has joined and the last one has left.
        """
        return self.ensure(str(uuid.uuid4()))

    def get(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def add(self, room_id: str, participant_id: str) -> Room:
        room = self.ensure(room_id)
        room.participants.add(participant_id)
        return room

    def remove(self, room_id: str, participant_id: str):
        room = self.rooms.get(room_id)
        if room is None:
            return
        room.participants.discard(participant_id)
        if not room.participants:
            del self.rooms[room_id]
            logger.info(f"Deleted empty room {room_id}")

    def list_participants(self, room_id: str) -> Set[str]:
        room = self.rooms.get(room_id)
        if room is None:
            return set()
        return set(room.participants)

    def list_rooms(self) -> List[Room]:
        return list(self.rooms.values())

    def clear(self):
        self.rooms.clear()
