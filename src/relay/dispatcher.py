"""Protocol dispatcher: one per process, owns all room and session state.

Routes parsed client messages to handlers and is the only writer of the
session table, the membership index and the message store. Events are handled
strictly one at a time under ``self._lock``; sends are non-blocking, so a
broadcast is complete by the time the triggering event returns.

History writes are fire-and-forget: they are queued on the store's per-room
worker and never hold up live delivery. A joiner's history snapshot is the one
storage read on the event path; it is awaited outside the lock, with the
joiner's connection on hold so frames for it keep their order meanwhile.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from relay.errors import AlreadyRegistered, NameTaken, ProtocolError
from relay.protocol import (
    ChatRequest,
    JoinRequest,
    JoinRoomRequest,
    chat_frame,
    error_frame,
    history_frame,
    parse_client_message,
    room_list_frame,
    system_frame,
    user_joined_frame,
    user_left_frame,
    username_taken_frame,
)
from relay.registry import MembershipIndex, PendingFrame
from relay.sessions import Session, SessionTable
from relay.store import StoredMessage

if TYPE_CHECKING:
    from relay.connection import Connection
    from relay.rooms import RoomRegistry
    from relay.store import MessageStore

logger = logging.getLogger(__name__)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class Dispatcher:
    def __init__(
        self,
        rooms: RoomRegistry,
        store: MessageStore,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._rooms = rooms
        self._store = store
        self._sessions = SessionTable()
        self._members = MembershipIndex()
        self._lock = asyncio.Lock()
        self._clock = clock or _wall_clock_ms
        self._last_timestamp = 0

    @property
    def rooms(self) -> RoomRegistry:
        return self._rooms

    @property
    def sessions(self) -> SessionTable:
        return self._sessions

    @property
    def members(self) -> MembershipIndex:
        return self._members

    @property
    def store(self) -> MessageStore:
        return self._store

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    async def on_connect(self, connection: Connection) -> None:
        async with self._lock:
            logger.info("New client connected: %s", connection.connection_id)
            self._send(connection, room_list_frame(self._rooms.list_rooms()))

    async def on_frame(self, connection: Connection, data: str | bytes) -> None:
        snapshot = None
        async with self._lock:
            try:
                msg = parse_client_message(data)
            except ProtocolError as exc:
                self._send(connection, error_frame(str(exc)))
                return

            if isinstance(msg, JoinRequest):
                self._handle_join(connection, msg)
            elif isinstance(msg, JoinRoomRequest):
                snapshot = self._handle_join_room(connection, msg)
            elif isinstance(msg, ChatRequest):
                self._handle_chat(connection, msg)

        if snapshot is not None:
            await self._deliver_history(connection, *snapshot)

    async def on_close(self, connection: Connection) -> None:
        async with self._lock:
            session = self._sessions.get(connection)
            if session is None:
                logger.info("Client disconnected before joining: %s", connection.connection_id)
                return

            if session.current_room:
                self._leave_current_room(connection, session)
            self._sessions.remove(connection)
            self._members.release(connection)
            logger.info("Client disconnected: %s", session.name)

    async def on_error(self, connection: Connection, error: BaseException) -> None:
        logger.warning("Transport error on %s: %s", connection.connection_id, error)

    # ------------------------------------------------------------------
    # Client message handlers
    # ------------------------------------------------------------------

    def _handle_join(self, connection: Connection, msg: JoinRequest) -> None:
        try:
            session = self._sessions.register(connection, msg.name)
        except NameTaken as exc:
            self._send(connection, username_taken_frame(str(exc)))
            return
        except AlreadyRegistered as exc:
            self._send(connection, error_frame(str(exc)))
            return

        self._send(
            connection,
            system_frame(f"Welcome {session.name}! Please select a room to join."),
        )
        self._send(connection, room_list_frame(self._rooms.list_rooms()))

    def _handle_join_room(
        self, connection: Connection, msg: JoinRoomRequest
    ) -> Optional[tuple[str, PendingFrame, asyncio.Future]]:
        session = self._sessions.get(connection)
        if session is None:
            self._send(connection, error_frame("You must register with a username first"))
            return None

        room = msg.room
        if not self._rooms.is_valid_room(room):
            self._send(connection, error_frame(f"Invalid room: {room}"))
            return None

        was_in_room = session.current_room is not None
        if was_in_room:
            self._leave_current_room(connection, session)

        self._sessions.set_room(connection, room)
        self._members.join(room, connection)
        logger.info(
            "%s %s room: %s",
            session.name,
            "switched to" if was_in_room else "joined",
            room,
        )

        # Snapshot is queued behind every earlier write for this room and ahead
        # of this join's own notice.
        snapshot = self._store.snapshot(room)
        slot = self._members.hold(connection)

        timestamp = self._now()
        self._store.submit(
            room, StoredMessage.system(f"{session.name} joined the room", timestamp)
        )
        self._members.broadcast(
            room,
            user_joined_frame(session.name, timestamp, room),
            exclude=connection,
        )

        verb = "switched to" if was_in_room else "joined"
        self._send(connection, system_frame(f"You {verb} room: {room}"))
        return room, slot, snapshot

    async def _deliver_history(
        self, connection: Connection, room: str, slot: PendingFrame, snapshot: asyncio.Future
    ) -> None:
        try:
            history = await snapshot
        except Exception:
            logger.exception("Error loading history for room %s", room)
            history = []
        async with self._lock:
            self._members.fill(connection, slot, history_frame(room, history))

    def _handle_chat(self, connection: Connection, msg: ChatRequest) -> None:
        session = self._sessions.get(connection)
        if session is None:
            self._send(
                connection,
                error_frame("You must join with a username before sending messages"),
            )
            return

        room = session.current_room
        if not room:
            self._send(connection, error_frame("You must join a room before sending messages"))
            return

        message = StoredMessage.chat(session.name, msg.text, self._now())
        self._store.submit(room, message)
        self._members.broadcast(room, chat_frame(message, room))

    def _leave_current_room(self, connection: Connection, session: Session) -> None:
        room = session.current_room
        if not room:
            return

        self._members.leave(room, connection)
        logger.info("%s left room: %s", session.name, room)

        timestamp = self._now()
        self._store.submit(
            room, StoredMessage.system(f"{session.name} left the room", timestamp)
        )
        self._members.broadcast(
            room,
            user_left_frame(session.name, timestamp, room),
            exclude=connection,
        )
        self._sessions.set_room(connection, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> int:
        """Epoch millis that never go backwards, even if the wall clock does."""
        self._last_timestamp = max(self._clock(), self._last_timestamp)
        return self._last_timestamp

    def _send(self, connection: Connection, frame: dict[str, Any]) -> None:
        self._members.send(connection, frame)
