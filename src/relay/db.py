"""
SQLAlchemy persistence for room history batches.

One row per batch; the batch's messages live in a JSON column so a room of
100 messages costs two or three rows instead of a hundred.

Dependencies: sqlalchemy (async), aiosqlite or any async driver
System role: Durable BatchBackend for MessageStore
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from relay.config import StorageConfig
from relay.errors import StorageUnavailable
from relay.store import BatchBackend, MemoryBatchBackend, MessageBatch, StoredMessage, new_batch_id

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for relay tables."""

    pass


class BatchRecord(Base):
    """
    A stored batch of consecutive messages for one room.

    Attributes:
        id: Batch identifier
        room: Room the batch belongs to
        seq: Position of the batch within its room, increasing
        start_time: Timestamp (epoch ms) of the first message
        end_time: Timestamp (epoch ms) of the last message
        message_count: Number of entries in ``messages``
        messages: List of ``{type, from?, message, timestamp}`` objects
    """

    __tablename__ = "message_batches"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    room: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_message_batches_room_start", "room", "start_time"),
        Index("ix_message_batches_room_seq", "room", "seq"),
    )


def _to_batch(record: BatchRecord) -> MessageBatch:
    return MessageBatch(
        batch_id=record.id,
        room=record.room,
        seq=record.seq,
        start_time=record.start_time,
        end_time=record.end_time,
        messages=[StoredMessage.from_view(m) for m in record.messages],
    )


def _to_record(batch: MessageBatch) -> BatchRecord:
    return BatchRecord(
        id=batch.batch_id,
        room=batch.room,
        seq=batch.seq,
        start_time=batch.start_time,
        end_time=batch.end_time,
        message_count=batch.count,
        messages=[m.to_view() for m in batch.messages],
    )


def _is_sqlite_memory(url: str) -> bool:
    if not url.startswith("sqlite"):
        return False
    return ":memory:" in url or url.split("://", 1)[-1] in ("", "/")


class SqlBatchBackend:
    """BatchBackend backed by an async SQLAlchemy engine."""

    def __init__(
        self,
        url: str,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        """
        Raises:
            StorageUnavailable: If the URL is malformed or its driver is missing
        """
        if engine is None:
            kwargs: dict = {"echo": echo}
            if _is_sqlite_memory(url):
                # one shared connection, otherwise every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"] = {"check_same_thread": False}
            else:
                kwargs["pool_pre_ping"] = True
            try:
                engine = create_async_engine(url, **kwargs)
            except (SQLAlchemyError, ImportError) as exc:
                raise StorageUnavailable(f"Cannot configure history database: {exc}") from exc
        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
        )

    async def connect(self) -> None:
        """Create tables and verify the database answers.

        Raises:
            StorageUnavailable: If the database cannot be reached
        """
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailable(f"Cannot reach history database: {exc}") from exc
        logger.info("Connected to history database")

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("History database connection closed")

    async def find_or_create_appendable_batch(
        self, room: str, capacity: int
    ) -> MessageBatch:
        async with self._session_factory() as session:
            stmt = (
                select(BatchRecord)
                .where(BatchRecord.room == room)
                .order_by(BatchRecord.seq.desc())
                .limit(1)
            )
            newest = (await session.execute(stmt)).scalar_one_or_none()

        if newest is not None and newest.message_count < capacity:
            return _to_batch(newest)
        next_seq = newest.seq + 1 if newest is not None else 1
        return MessageBatch(batch_id=new_batch_id(), room=room, seq=next_seq)

    async def save_batch(self, batch: MessageBatch) -> None:
        async with self._session_factory() as session:
            await session.merge(_to_record(batch))
            await session.commit()

    async def list_batches(self, room: str) -> list[MessageBatch]:
        async with self._session_factory() as session:
            stmt = (
                select(BatchRecord)
                .where(BatchRecord.room == room)
                .order_by(BatchRecord.start_time.asc(), BatchRecord.seq.asc())
            )
            records = (await session.execute(stmt)).scalars().all()
        return [_to_batch(r) for r in records]

    async def delete_batches(self, batch_ids: Iterable[str]) -> int:
        ids = list(batch_ids)
        if not ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(delete(BatchRecord).where(BatchRecord.id.in_(ids)))
            await session.commit()
        return result.rowcount or 0


def build_backend(config: StorageConfig) -> BatchBackend:
    """Pick the backend for a storage URL; ``memory://`` or empty keeps history in-process."""
    if config.in_memory:
        logger.info("Using in-memory history backend")
        return MemoryBatchBackend()
    return SqlBatchBackend(config.url, echo=config.echo_sql)
