"""Wire protocol: message type names, inbound parsing, outbound frames.

Frames are JSON objects with a ``type`` field, one object per text frame.

Client → server:
  {"type": "join", "name": "ann"}
  {"type": "join_room", "room": "general"}
  {"type": "message", "text": "hi"}
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ValidationError

from relay.errors import ProtocolError, UnknownMessageType
from relay.store import StoredMessage

# client -> server
JOIN = "join"
JOIN_ROOM = "join_room"
# client -> server, server -> clients
CHAT = "message"
# server -> client
ROOM_LIST = "room_list"
HISTORY = "history"
SYSTEM = "system"
USER_JOINED_ROOM = "user_joined_room"
USER_LEFT_ROOM = "user_left_room"
ERROR = "error"
USERNAME_TAKEN = "username_taken"


def _require_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


NonBlank = Annotated[str, AfterValidator(_require_text)]


class JoinRequest(BaseModel):
    """Register a display name for this connection."""
    type: Literal["join"]
    name: NonBlank


class JoinRoomRequest(BaseModel):
    """Enter (or switch to) a room."""
    type: Literal["join_room"]
    room: NonBlank


class ChatRequest(BaseModel):
    """Say something in the current room."""
    type: Literal["message"]
    text: NonBlank


ClientMessage = Union[JoinRequest, JoinRoomRequest, ChatRequest]

_REQUESTS: dict[str, tuple[type[BaseModel], str]] = {
    JOIN: (JoinRequest, "Valid 'name' is required for join"),
    JOIN_ROOM: (JoinRoomRequest, "Valid 'room' is required for join_room"),
    CHAT: (ChatRequest, "Non-empty 'text' is required"),
}


def parse_client_message(data: Union[str, bytes]) -> ClientMessage:
    """Decode and validate one inbound frame.

    Raises:
        ProtocolError: Malformed JSON, wrong shape or missing/invalid field
        UnknownMessageType: Well-formed frame with an unsupported ``type``
    """
    try:
        payload = json.loads(data)
    except (ValueError, TypeError) as exc:
        raise ProtocolError("Invalid JSON format") from exc

    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = payload.get("type")
    if not msg_type:
        raise ProtocolError("Field 'type' is required")
    if not isinstance(msg_type, str) or msg_type not in _REQUESTS:
        raise UnknownMessageType(msg_type)

    model, error = _REQUESTS[msg_type]
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(error) from exc


# ---------------------------------------------------------------------------
# Server -> client frames
# ---------------------------------------------------------------------------


def room_list_frame(rooms: Iterable[str]) -> dict[str, Any]:
    return {"type": ROOM_LIST, "rooms": list(rooms)}


def history_frame(room: str, messages: Iterable[StoredMessage]) -> dict[str, Any]:
    return {
        "type": HISTORY,
        "messages": [m.to_view() for m in messages],
        "room": room,
    }


def system_frame(
    message: str,
    timestamp: Optional[int] = None,
    room: Optional[str] = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": SYSTEM, "message": message}
    if timestamp is not None:
        frame["timestamp"] = timestamp
    if room is not None:
        frame["room"] = room
    return frame


def user_joined_frame(user: str, timestamp: int, room: str) -> dict[str, Any]:
    return {"type": USER_JOINED_ROOM, "user": user, "timestamp": timestamp, "room": room}


def user_left_frame(user: str, timestamp: int, room: str) -> dict[str, Any]:
    return {"type": USER_LEFT_ROOM, "user": user, "timestamp": timestamp, "room": room}


def chat_frame(message: StoredMessage, room: str) -> dict[str, Any]:
    return {
        "type": CHAT,
        "from": message.sender,
        "message": message.text,
        "timestamp": message.timestamp,
        "room": room,
    }


def error_frame(message: str) -> dict[str, Any]:
    return {"type": ERROR, "message": message}


def username_taken_frame(message: str) -> dict[str, Any]:
    return {"type": USERNAME_TAKEN, "message": message}
