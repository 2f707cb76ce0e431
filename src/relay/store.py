"""Batched, size-bounded room history.

Messages are grouped per room into batches of up to ``batch_size`` entries so
the backend holds few records. Retention deletes whole batches from the oldest
end, which keeps cleanup proportional to the number of batches rather than the
number of messages. A room may therefore keep slightly fewer than
``history_limit`` messages (at most one batch of slack).

Raw batch records live in a backend. ``MemoryBatchBackend`` is the in-process
arena; ``relay.db.SqlBatchBackend`` is the durable one. Both are async so they
can be swapped freely.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Iterable,
    Optional,
    Protocol,
    TypeVar,
)

if TYPE_CHECKING:
    from relay.rooms import RoomRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

KIND_CHAT = "message"
KIND_SYSTEM = "system"


@dataclass(frozen=True)
class StoredMessage:
    kind: str
    text: str
    timestamp: int
    # None iff kind == "system"
    sender: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in (KIND_CHAT, KIND_SYSTEM):
            raise ValueError(f"Unknown message kind: {self.kind}")
        if self.kind == KIND_CHAT and not self.sender:
            raise ValueError("Chat messages need a sender")
        if self.kind == KIND_SYSTEM and self.sender is not None:
            raise ValueError("System messages have no sender")

    @classmethod
    def chat(cls, sender: str, text: str, timestamp: int) -> StoredMessage:
        return cls(kind=KIND_CHAT, text=text, timestamp=timestamp, sender=sender)

    @classmethod
    def system(cls, text: str, timestamp: int) -> StoredMessage:
        return cls(kind=KIND_SYSTEM, text=text, timestamp=timestamp)

    def to_view(self) -> dict[str, Any]:
        """Wire/storage shape: ``{type, from?, message, timestamp}``."""
        view: dict[str, Any] = {"type": self.kind}
        if self.sender is not None:
            view["from"] = self.sender
        view["message"] = self.text
        view["timestamp"] = self.timestamp
        return view

    @classmethod
    def from_view(cls, view: dict[str, Any]) -> StoredMessage:
        return cls(
            kind=view["type"],
            text=view["message"],
            timestamp=int(view["timestamp"]),
            sender=view.get("from"),
        )


@dataclass
class MessageBatch:
    batch_id: str
    room: str
    # arena position; orders batches that share a start_time
    seq: int
    start_time: int = 0
    end_time: int = 0
    messages: list[StoredMessage] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.messages)

    def add(self, message: StoredMessage) -> None:
        if not self.messages:
            self.start_time = message.timestamp
        self.messages.append(message)
        self.end_time = message.timestamp


class BatchBackend(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def find_or_create_appendable_batch(
        self, room: str, capacity: int
    ) -> MessageBatch: ...

    async def save_batch(self, batch: MessageBatch) -> None: ...

    async def list_batches(self, room: str) -> list[MessageBatch]: ...

    async def delete_batches(self, batch_ids: Iterable[str]) -> int: ...


def new_batch_id() -> str:
    return uuid.uuid4().hex[:16]


class MemoryBatchBackend:
    """In-process batch arena. All data lives in a dict, lost on restart."""

    def __init__(self) -> None:
        self._batches: dict[str, MessageBatch] = {}
        self._seq = itertools.count(1)

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def find_or_create_appendable_batch(
        self, room: str, capacity: int
    ) -> MessageBatch:
        newest = max(
            (b for b in self._batches.values() if b.room == room),
            key=lambda b: b.seq,
            default=None,
        )
        if newest is not None and newest.count < capacity:
            # hand out a copy so a failed save leaves the arena untouched
            return dataclasses.replace(newest, messages=list(newest.messages))
        return MessageBatch(batch_id=new_batch_id(), room=room, seq=next(self._seq))

    async def save_batch(self, batch: MessageBatch) -> None:
        self._batches[batch.batch_id] = dataclasses.replace(
            batch, messages=list(batch.messages)
        )

    async def list_batches(self, room: str) -> list[MessageBatch]:
        batches = [b for b in self._batches.values() if b.room == room]
        batches.sort(key=lambda b: (b.start_time, b.seq))
        return [dataclasses.replace(b, messages=list(b.messages)) for b in batches]

    async def delete_batches(self, batch_ids: Iterable[str]) -> int:
        removed = 0
        for batch_id in batch_ids:
            if self._batches.pop(batch_id, None) is not None:
                removed += 1
        return removed


class MessageStore:
    """Per-room append log on top of a batch backend.

    Every operation on a room goes through that room's FIFO queue, drained by
    a single worker task, so appends, cleanups and history reads for one room
    are observed in the order they were issued. Rooms are independent.
    """

    def __init__(
        self,
        backend: BatchBackend,
        rooms: RoomRegistry,
        batch_size: int = 50,
        history_limit: int = 100,
    ) -> None:
        if batch_size <= 0 or history_limit <= 0:
            raise ValueError("batch_size and history_limit must be positive")
        if batch_size > history_limit:
            raise ValueError("batch_size may not exceed history_limit")
        self._backend = backend
        self._rooms = rooms
        self._batch_size = batch_size
        self._history_limit = history_limit
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def backend(self) -> BatchBackend:
        return self._backend

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def history_limit(self) -> int:
        return self._history_limit

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def append(self, room: str, message: StoredMessage) -> bool:
        """Append and wait for it. Returns False if the message was not stored."""
        return await self._enqueue(room, lambda: self._append_now(room, message), False)

    def submit(self, room: str, message: StoredMessage) -> asyncio.Future:
        """Queue an append without waiting for it."""
        future = self._enqueue(room, lambda: self._append_now(room, message), False)
        future.add_done_callback(self._log_unexpected)
        return future

    async def load_history(self, room: str) -> list[StoredMessage]:
        return await self.snapshot(room)

    def snapshot(self, room: str) -> asyncio.Future:
        """Queue a history read and return its future without waiting.

        The read sees every write issued for the room before this call and
        none issued after it.
        """
        return self._enqueue(room, lambda: self._load_now(room), [])

    async def drain(self) -> None:
        """Wait until every queued operation has run."""
        await asyncio.gather(*(q.join() for q in list(self._queues.values())))

    async def close(self) -> None:
        # late callers (connections closing after shutdown) get the fallback result
        self._closed = True
        await self.drain()
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    # ------------------------------------------------------------------
    # Per-room serialisation
    # ------------------------------------------------------------------

    def _enqueue(
        self, room: str, op: Callable[[], Awaitable[T]], fallback: T
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self._closed:
            logger.warning("History store is closed, skipping operation for room %s", room)
            future.set_result(fallback)
            return future

        queue = self._queues.get(room)
        if queue is None:
            queue = self._queues[room] = asyncio.Queue()
            self._workers[room] = asyncio.create_task(
                self._run_room(queue), name=f"history-{room}"
            )
        queue.put_nowait((op, future))
        return future

    @staticmethod
    async def _run_room(queue: asyncio.Queue) -> None:
        while True:
            op, future = await queue.get()
            try:
                result = await op()
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()

    @staticmethod
    def _log_unexpected(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background history append failed", exc_info=exc)

    # ------------------------------------------------------------------
    # Operations (always run on the room's worker)
    # ------------------------------------------------------------------

    async def _append_now(self, room: str, message: StoredMessage) -> bool:
        if not self._rooms.is_valid_room(room):
            logger.warning("Dropping history append for unknown room %s", room)
            return False

        try:
            batch = await self._backend.find_or_create_appendable_batch(
                room, self._batch_size
            )
            batch.add(message)
            await self._backend.save_batch(batch)
        except Exception:
            logger.exception("Error adding message to room %s", room)
            return False

        await self._enforce_retention(room)
        return True

    async def _enforce_retention(self, room: str) -> None:
        try:
            batches = await self._backend.list_batches(room)
            excess = sum(b.count for b in batches) - self._history_limit
            if excess <= 0:
                return

            doomed: list[str] = []
            for batch in batches:
                if excess <= 0:
                    break
                doomed.append(batch.batch_id)
                excess -= batch.count

            removed = await self._backend.delete_batches(doomed)
            logger.debug("Pruned %d batches from room %s", removed, room)
        except Exception:
            logger.exception("Error cleaning up old messages for room %s", room)

    async def _load_now(self, room: str) -> list[StoredMessage]:
        if not self._rooms.is_valid_room(room):
            return []

        try:
            batches = await self._backend.list_batches(room)
        except Exception:
            logger.exception("Error loading history for room %s", room)
            return []

        messages: list[StoredMessage] = []
        for batch in batches:
            messages.extend(batch.messages)
        return messages[-self._history_limit :]
