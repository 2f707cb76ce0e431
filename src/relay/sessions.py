"""Session table: connection → registered name and current room.

Names are unique across live connections (exact, case-sensitive match).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from relay.errors import AlreadyRegistered, NameTaken, NotRegistered

if TYPE_CHECKING:
    from relay.connection import Connection

logger = logging.getLogger(__name__)


@dataclass
class Session:
    name: str
    current_room: Optional[str] = None


class SessionTable:
    def __init__(self) -> None:
        self._sessions: dict[Connection, Session] = {}
        # name → owning connection
        self._names: dict[str, Connection] = {}

    def register(self, connection: Connection, name: str) -> Session:
        existing = self._sessions.get(connection)
        if existing is not None:
            raise AlreadyRegistered(existing.name)
        if name in self._names:
            raise NameTaken(name)

        session = Session(name=name)
        self._sessions[connection] = session
        self._names[name] = connection
        logger.info("Registered %s on connection %s", name, connection.connection_id)
        return session

    def get(self, connection: Connection) -> Optional[Session]:
        return self._sessions.get(connection)

    def set_room(self, connection: Connection, room: Optional[str]) -> None:
        session = self._sessions.get(connection)
        if session is None:
            raise NotRegistered("You must register with a username first")
        session.current_room = room

    def remove(self, connection: Connection) -> Optional[Session]:
        session = self._sessions.pop(connection, None)
        if session is not None:
            self._names.pop(session.name, None)
        return session

    def is_name_taken(self, name: str) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._sessions)
