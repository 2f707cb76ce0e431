"""FastAPI application: WebSocket relay endpoint plus a small HTTP surface."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from relay.config import AppConfig, load_config
from relay.db import build_backend
from relay.dispatcher import Dispatcher
from relay.rooms import RoomRegistry
from relay.store import BatchBackend, MessageStore
from relay.transport import serve_connection

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str


class RoomListResponse(BaseModel):
    """Rooms a client may join, in display order."""
    rooms: List[str]


def create_app(
    config: Optional[AppConfig] = None,
    backend: Optional[BatchBackend] = None,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        config: Settings; loaded from YAML/environment when omitted
        backend: History backend override; chosen from ``config.storage`` otherwise

    Returns:
        FastAPI: App whose lifespan owns the storage connection and dispatcher
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        history_backend = backend or build_backend(config.storage)
        await history_backend.connect()

        rooms = RoomRegistry(config.chat.rooms)
        store = MessageStore(
            history_backend,
            rooms,
            batch_size=config.chat.batch_size,
            history_limit=config.chat.history_limit,
        )
        app.state.dispatcher = Dispatcher(rooms, store)
        logger.info("Relay ready with rooms: %s", ", ".join(rooms.list_rooms()))

        yield

        await store.close()
        await history_backend.close()
        logger.info("Relay stopped")

    app = FastAPI(
        title="Room Relay",
        description="Multi-room chat relay",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors.origins,
        allow_credentials=config.cors.allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/api/rooms", response_model=RoomListResponse)
    async def list_rooms(request: Request) -> RoomListResponse:
        dispatcher: Dispatcher = request.app.state.dispatcher
        return RoomListResponse(rooms=dispatcher.rooms.list_rooms())

    async def relay_socket(websocket: WebSocket) -> None:
        await serve_connection(websocket, websocket.app.state.dispatcher)

    app.add_api_websocket_route("/ws", relay_socket)
    # Browser clients of the bundled frontend connect to the page origin
    app.add_api_websocket_route("/", relay_socket)

    if config.server.static_dir:
        app.mount("/", StaticFiles(directory=config.server.static_dir, html=True), name="static")

    return app
