"""WebSocket transport: adapts a FastAPI WebSocket to the relay core."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Optional

from fastapi import WebSocket, WebSocketDisconnect

if TYPE_CHECKING:
    from relay.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """One client socket with its own outbound queue.

    ``send`` only enqueues; a writer task flushes frames in order, so the
    dispatcher never waits on a slow client.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._id = uuid.uuid4().hex[:12]
        self._outbound: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._open = True
        self._writer: Optional[asyncio.Task] = None

    @property
    def connection_id(self) -> str:
        return self._id

    @property
    def is_open(self) -> bool:
        return self._open

    def start(self) -> None:
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self._id}")

    def send(self, data: str) -> bool:
        if not self._open:
            return False
        self._outbound.put_nowait(data)
        return True

    def mark_closed(self) -> None:
        self._open = False

    async def close(self) -> None:
        """Stop accepting frames and let the writer finish what is queued."""
        self._open = False
        self._outbound.put_nowait(None)
        if self._writer is not None:
            await self._writer

    async def _write_loop(self) -> None:
        try:
            while True:
                data = await self._outbound.get()
                if data is None:
                    return
                await self._websocket.send_text(data)
        except (WebSocketDisconnect, RuntimeError, ConnectionResetError, BrokenPipeError) as e:
            # Client went away; remaining frames are dropped
            logger.debug("Writer for %s stopped: %s", self._id, e)
            self._open = False


async def serve_connection(websocket: WebSocket, dispatcher: Dispatcher) -> None:
    """Pump one WebSocket through the dispatcher until it closes."""
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    connection.start()

    try:
        await dispatcher.on_connect(connection)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("text")
            if data is None:
                data = message.get("bytes") or b""
            await dispatcher.on_frame(connection, data)
    except asyncio.CancelledError:
        raise
    except WebSocketDisconnect:
        pass
    except (ConnectionResetError, BrokenPipeError) as e:
        logger.debug("Connection closed: %s", e)
    except Exception as e:
        logger.exception("Unexpected error in relay WebSocket")
        await dispatcher.on_error(connection, e)
    finally:
        connection.mark_closed()
        await dispatcher.on_close(connection)
        await connection.close()
