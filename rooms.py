"""Room registry for the watchroom relay.

A room exists only while it has members: it is created by the first
register() and removed by the last unregister(). Every mutation happens on
the relay's event loop, so nothing here locks.
"""
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(eq=False)
class Session:
    ws: Any
    user: str
    room: str
    key: str = ''  # declared by the client, never used to encrypt
    is_host: bool = False


class RoomRegistry:
    def __init__(self):
        self._rooms: dict[str, list[Session]] = {}
        self._hosts: dict[str, Session] = {}

    def register(self, room: str, session: Session):
        members = self._rooms.setdefault(room, [])
        if session not in members:
            members.append(session)

    def unregister(self, session: Session):
        members = self._rooms.get(session.room)
        if not members or session not in members:
            return
        members.remove(session)
        if self._hosts.get(session.room) is session:
            del self._hosts[session.room]
            session.is_host = False
        if not members:
            del self._rooms[session.room]

    def peers_except(self, room: str, session: Session) -> list[Session]:
        return [s for s in self._rooms.get(room, ()) if s is not session]

    def members(self, room: str) -> list[Session]:
        return list(self._rooms.get(room, ()))

    def host_of(self, room: str) -> Optional[Session]:
        return self._hosts.get(room)

    def claim_host(self, session: Session) -> bool:
        """Make session the room host unless another live session holds it."""
        if session not in self._rooms.get(session.room, ()):
            return False
        current = self._hosts.get(session.room)
        if current is not None and current is not session:
            return False
        self._hosts[session.room] = session
        session.is_host = True
        return True

    @property
    def rooms(self) -> list[str]:
        return list(self._rooms)

    def __contains__(self, room) -> bool:
        return room in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
