"""
In-memory room table for the signaling relay.

A room exists from its first join until its last participant leaves; the
store never keeps a room with no participants.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

DEFAULT_NAME = "Anonymous"


@dataclass
class Participant:
    connection_id: str
    room_id: str
    name: str = DEFAULT_NAME

    def to_dict(self):
        return {"connectionId": self.connection_id, "name": self.name}


class RoomStore:
    def __init__(self):
        self._rooms: Dict[str, Dict[str, Participant]] = {}

    def add(self, participant: Participant) -> None:
        """Insert a participant, overwriting any entry for the same connection."""
        self._rooms.setdefault(participant.room_id, {})[participant.connection_id] = participant

    def get(self, room_id: str, connection_id: str) -> Optional[Participant]:
        return self._rooms.get(room_id, {}).get(connection_id)

    def members(self, room_id: str) -> List[Participant]:
        return list(self._rooms.get(room_id, {}).values())

    def remove(self, room_id: str, connection_id: str) -> Optional[Participant]:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        participant = room.pop(connection_id, None)
        if not room:
            del self._rooms[room_id]
        return participant

    def rooms_of(self, connection_id: str) -> List[str]:
        return [room_id for room_id, room in self._rooms.items() if connection_id in room]

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def __contains__(self, room_id):
        return room_id in self._rooms

    def __len__(self):
        return len(self._rooms)
