"""
Test suite for MessageStore and the in-memory batch backend.

Covers batching, whole-batch retention, history trimming and ordering,
storage-fault handling and per-room serialisation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from relay.rooms import RoomRegistry
from relay.store import MemoryBatchBackend, MessageStore, StoredMessage


def _chat(i: int, sender: str = "ann") -> StoredMessage:
    return StoredMessage.chat(sender, f"msg {i}", 1_000 + i)


@pytest_asyncio.fixture
async def small_store(backend: MemoryBatchBackend, rooms: RoomRegistry):
    """Store with tiny batches so retention kicks in quickly."""
    message_store = MessageStore(backend, rooms, batch_size=3, history_limit=7)
    yield message_store
    await message_store.close()


class TestStoredMessage:
    """Test suite for StoredMessage construction and views."""

    def test_chat_view_includes_sender(self) -> None:
        message = StoredMessage.chat("ann", "hi", 42)

        assert message.to_view() == {
            "type": "message",
            "from": "ann",
            "message": "hi",
            "timestamp": 42,
        }

    def test_system_view_has_no_from(self) -> None:
        message = StoredMessage.system("bob left the room", 7)

        assert "from" not in message.to_view()
        assert StoredMessage.from_view(message.to_view()) == message

    def test_chat_without_sender_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            StoredMessage(kind="message", text="hi", timestamp=1)

    def test_system_with_sender_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            StoredMessage(kind="system", text="hi", timestamp=1, sender="ann")


class TestMessageStoreConstruction:
    def test_batch_larger_than_limit_is_rejected(
        self, backend: MemoryBatchBackend, rooms: RoomRegistry
    ) -> None:
        with pytest.raises(ValueError):
            MessageStore(backend, rooms, batch_size=10, history_limit=5)


class TestAppend:
    """Test suite for MessageStore.append() batching."""

    @pytest.mark.asyncio
    async def test_append_groups_messages_into_batches(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        """Test a new batch starts only when the newest one is full."""
        # Act
        for i in range(5):
            assert await small_store.append("general", _chat(i))

        # Assert
        batches = await backend.list_batches("general")
        assert [b.count for b in batches] == [3, 2]
        assert batches[0].start_time == 1_000
        assert batches[0].end_time == 1_002
        assert batches[1].start_time == 1_003

    @pytest.mark.asyncio
    async def test_rooms_get_separate_batches(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        await small_store.append("general", _chat(1))
        await small_store.append("random", _chat(2))

        assert [b.count for b in await backend.list_batches("general")] == [1]
        assert [b.count for b in await backend.list_batches("random")] == [1]

    @pytest.mark.asyncio
    async def test_unknown_room_is_ignored(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        assert await small_store.append("lobby", _chat(1)) is False
        assert await backend.list_batches("lobby") == []
        assert await small_store.load_history("lobby") == []


class TestRetention:
    """Test suite for whole-batch retention."""

    @pytest.mark.asyncio
    async def test_retention_deletes_whole_batches_oldest_first(
        self, small_store: MessageStore
    ) -> None:
        """Test count stays within [limit - batch + 1, limit] once over the ceiling."""
        # Act / Assert after every append past the ceiling
        for i in range(40):
            await small_store.append("general", _chat(i))
            history = await small_store.load_history("general")
            if i >= 7 + 3:
                assert 7 - 3 + 1 <= len(history) <= 7
            assert len(history) <= 7

        history = await small_store.load_history("general")
        assert history[-1].text == "msg 39"

    @pytest.mark.asyncio
    async def test_retention_with_default_sizes(
        self, store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        # Act
        for i in range(230):
            await store.append("games", _chat(i))

        # Assert
        batches = await backend.list_batches("games")
        total = sum(b.count for b in batches)
        assert 51 <= total <= 100
        assert all(b.count <= 50 for b in batches)

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_the_append(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        """Test a failing delete is logged and the message stays stored."""
        backend.delete_batches = AsyncMock(side_effect=RuntimeError("db down"))

        for i in range(9):
            assert await small_store.append("general", _chat(i))

        assert sum(b.count for b in await backend.list_batches("general")) == 9


class TestLoadHistory:
    """Test suite for MessageStore.load_history()."""

    @pytest.mark.asyncio
    async def test_history_is_ordered_by_timestamp(self, small_store: MessageStore) -> None:
        for i in range(6):
            await small_store.append("general", _chat(i))

        history = await small_store.load_history("general")

        timestamps = [m.timestamp for m in history]
        assert timestamps == sorted(timestamps)
        assert [m.text for m in history] == [f"msg {i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_history_is_trimmed_to_limit(
        self, backend: MemoryBatchBackend, rooms: RoomRegistry
    ) -> None:
        """Test history never exceeds the ceiling even if retention lagged."""
        # Arrange: write batches straight into the backend, bypassing cleanup
        for start in range(0, 12, 3):
            batch = await backend.find_or_create_appendable_batch("general", 3)
            for i in range(start, start + 3):
                batch.add(_chat(i))
            await backend.save_batch(batch)
        message_store = MessageStore(backend, rooms, batch_size=3, history_limit=7)

        # Act
        history = await message_store.load_history("general")
        await message_store.close()

        # Assert
        assert len(history) == 7
        assert history[0].text == "msg 5"
        assert history[-1].text == "msg 11"

    @pytest.mark.asyncio
    async def test_empty_room_has_empty_history(self, store: MessageStore) -> None:
        assert await store.load_history("random") == []


class TestStorageFaults:
    """Test suite for best-effort durability."""

    @pytest.mark.asyncio
    async def test_append_fault_returns_false(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        backend.save_batch = AsyncMock(side_effect=OSError("disk full"))

        assert await small_store.append("general", _chat(1)) is False

    @pytest.mark.asyncio
    async def test_load_fault_returns_empty_history(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        await small_store.append("general", _chat(1))
        backend.list_batches = AsyncMock(side_effect=OSError("unreachable"))

        assert await small_store.load_history("general") == []

    @pytest.mark.asyncio
    async def test_failed_save_does_not_corrupt_arena(
        self, small_store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        """Test a half-done append leaves earlier batches untouched."""
        await small_store.append("general", _chat(1))
        original_save = backend.save_batch
        backend.save_batch = AsyncMock(side_effect=OSError("disk full"))

        await small_store.append("general", _chat(2))
        backend.save_batch = original_save

        history = await small_store.load_history("general")
        assert [m.text for m in history] == ["msg 1"]


class TestOrdering:
    """Test suite for per-room serialisation of queued work."""

    @pytest.mark.asyncio
    async def test_submitted_appends_land_in_issue_order(
        self, store: MessageStore, backend: MemoryBatchBackend
    ) -> None:
        """Test fire-and-forget appends are applied in the order issued."""
        # Arrange: slow the backend down so appends overlap
        original_find = backend.find_or_create_appendable_batch

        async def slow_find(room: str, capacity: int):
            await asyncio.sleep(0)
            return await original_find(room, capacity)

        backend.find_or_create_appendable_batch = slow_find

        # Act
        for i in range(20):
            store.submit("general", _chat(i))
        history = await store.load_history("general")

        # Assert: the read was queued last, so it sees all twenty
        assert [m.text for m in history] == [f"msg {i}" for i in range(20)]

    @pytest.mark.asyncio
    async def test_drain_waits_for_submitted_work(self, store: MessageStore) -> None:
        futures = [store.submit("random", _chat(i)) for i in range(3)]

        await store.drain()

        assert all(f.done() and f.result() is True for f in futures)


class TestClosedStore:
    """Test suite for calls that arrive after shutdown."""

    @pytest.mark.asyncio
    async def test_late_calls_resolve_without_new_workers(
        self, backend: MemoryBatchBackend, rooms: RoomRegistry
    ) -> None:
        # Arrange
        message_store = MessageStore(backend, rooms, batch_size=3, history_limit=7)
        await message_store.append("general", _chat(1))
        await message_store.close()
        tasks_before = asyncio.all_tasks()

        # Act
        submitted = message_store.submit("general", _chat(2))
        appended = await message_store.append("random", _chat(3))
        history = await message_store.load_history("general")

        # Assert
        assert submitted.done() and submitted.result() is False
        assert appended is False
        assert history == []
        assert asyncio.all_tasks() == tasks_before
        stored = await backend.list_batches("general")
        assert [m.text for b in stored for m in b.messages] == ["msg 1"]

    @pytest.mark.asyncio
    async def test_snapshot_is_queued_at_call_time(self, store: MessageStore) -> None:
        """Test a snapshot sees earlier writes and not later ones."""
        store.submit("games", _chat(1))
        snapshot = store.snapshot("games")
        store.submit("games", _chat(2))

        history = await snapshot

        assert [m.text for m in history] == ["msg 1"]
