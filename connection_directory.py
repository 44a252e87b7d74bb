from typing import Dict, NamedTuple, Optional


class DirectoryEntry(NamedTuple):
    room_id: str
    display_name: str


class ConnectionDirectory:
    """Reverse index from connection id to the room and name it joined with"""

    def __init__(self):
        self.entries: Dict[str, DirectoryEntry] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def register(self, conn_id: str, room_id: str, display_name: str):
        self.entries[conn_id] = DirectoryEntry(room_id, display_name)

    def lookup(self, conn_id: str) -> Optional[DirectoryEntry]:
        return self.entries.get(conn_id)

    def unregister(self, conn_id: str):
        self.entries.pop(conn_id, None)

    def clear(self):
        self.entries.clear()
