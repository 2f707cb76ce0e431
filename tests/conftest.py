"""
Shared fixtures for the relay test suite.

Provides: recording fake connections, room registry, in-memory message store,
and a dispatcher wired to them with a deterministic clock.
"""

import itertools
import json
from typing import Any, Optional

import pytest
import pytest_asyncio

from relay.dispatcher import Dispatcher
from relay.rooms import RoomRegistry
from relay.store import MemoryBatchBackend, MessageStore

ROOMS = ["general", "random", "games"]


class FakeConnection:
    """Connection double that records every frame it is sent."""

    def __init__(self, connection_id: str = "conn") -> None:
        self.connection_id = connection_id
        self.is_open = True
        self.sent: list[dict[str, Any]] = []

    def send(self, data: str) -> bool:
        if not self.is_open:
            return False
        self.sent.append(json.loads(data))
        return True

    def frames(self, frame_type: Optional[str] = None) -> list[dict[str, Any]]:
        if frame_type is None:
            return list(self.sent)
        return [f for f in self.sent if f["type"] == frame_type]

    def types(self) -> list[str]:
        return [f["type"] for f in self.sent]

    def clear(self) -> None:
        self.sent.clear()

    def __repr__(self) -> str:
        return f"FakeConnection({self.connection_id!r})"


def frame(**fields: Any) -> str:
    """Serialise a client frame."""
    return json.dumps(fields)


@pytest.fixture
def rooms() -> RoomRegistry:
    return RoomRegistry(ROOMS)


@pytest.fixture
def backend() -> MemoryBatchBackend:
    return MemoryBatchBackend()


@pytest_asyncio.fixture
async def store(backend: MemoryBatchBackend, rooms: RoomRegistry):
    message_store = MessageStore(backend, rooms, batch_size=50, history_limit=100)
    yield message_store
    await message_store.close()


@pytest.fixture
def dispatcher(rooms: RoomRegistry, store: MessageStore) -> Dispatcher:
    clock = itertools.count(1_700_000_000_000)
    return Dispatcher(rooms, store, clock=lambda: next(clock))


@pytest.fixture
def make_connection():
    counter = itertools.count(1)

    def _make(connection_id: Optional[str] = None) -> FakeConnection:
        return FakeConnection(connection_id or f"conn-{next(counter)}")

    return _make
