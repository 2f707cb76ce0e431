"""Membership index: maps room → set of connected clients.

Single-process only. Every connection sits in at most one room; the
dispatcher removes it from the old room before adding it to the new one.

A connection can be put on hold while a frame for it is still being
produced (a room's history snapshot). Until that frame is filled in, every
frame addressed to the connection, unicast or broadcast, queues behind it so
the client sees them in the order they were issued.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict, deque
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:
    from relay.connection import Connection

logger = logging.getLogger(__name__)


class PendingFrame:
    """Reserved position in a held connection's outbound order."""

    __slots__ = ("data",)

    def __init__(self) -> None:
        self.data: Optional[str] = None


class MembershipIndex:
    def __init__(self) -> None:
        self._members: dict[str, set[Connection]] = defaultdict(set)
        self._held: dict[Connection, deque[Union[str, PendingFrame]]] = {}

    def join(self, room: str, connection: Connection) -> None:
        self._members[room].add(connection)
        logger.debug(
            "Connection %s joined room %s (total: %d)",
            connection.connection_id,
            room,
            len(self._members[room]),
        )

    def leave(self, room: str, connection: Connection) -> None:
        members = self._members.get(room)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._members[room]
        logger.debug("Connection %s left room %s", connection.connection_id, room)

    def members_of(self, room: str) -> frozenset[Connection]:
        return frozenset(self._members.get(room, ()))

    def send(self, connection: Connection, frame: dict[str, Any]) -> bool:
        """Unicast a frame, queueing it if the connection is on hold."""
        return self._deliver(connection, json.dumps(frame))

    def broadcast(
        self,
        room: str,
        frame: dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        """Send a frame to every open member of a room except ``exclude``."""
        data = json.dumps(frame)
        delivered = 0
        for connection in list(self._members.get(room, ())):
            if connection is exclude:
                continue
            if self._deliver(connection, data):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    def hold(self, connection: Connection) -> PendingFrame:
        """Reserve the next outbound position for ``connection``."""
        pending = PendingFrame()
        self._held.setdefault(connection, deque()).append(pending)
        return pending

    def fill(
        self, connection: Connection, pending: PendingFrame, frame: dict[str, Any]
    ) -> None:
        """Fill a reserved position and flush whatever is now ready."""
        pending.data = json.dumps(frame)
        queued = self._held.get(connection)
        if queued is None:
            return

        while queued:
            head = queued[0]
            if isinstance(head, PendingFrame):
                if head.data is None:
                    return
                data = head.data
            else:
                data = head
            queued.popleft()
            if connection.is_open:
                connection.send(data)
        del self._held[connection]

    def is_held(self, connection: Connection) -> bool:
        return connection in self._held

    def release(self, connection: Connection) -> None:
        """Forget anything queued for a connection that has gone away."""
        dropped = self._held.pop(connection, None)
        if dropped:
            logger.debug(
                "Dropped %d queued frames for %s", len(dropped), connection.connection_id
            )

    def _deliver(self, connection: Connection, data: str) -> bool:
        if not connection.is_open:
            return False
        queued = self._held.get(connection)
        if queued is not None:
            queued.append(data)
            return True
        return connection.send(data)
