"""Static catalog of the rooms a client may join."""

from __future__ import annotations

from typing import Iterable


class RoomRegistry:
    def __init__(self, rooms: Iterable[str]) -> None:
        self._rooms: list[str] = []
        for room in rooms:
            if not room or not room.strip():
                raise ValueError("Room names must be non-empty")
            if room in self._rooms:
                raise ValueError(f"Duplicate room name: {room}")
            self._rooms.append(room)
        self._lookup = frozenset(self._rooms)

    def list_rooms(self) -> list[str]:
        return list(self._rooms)

    def is_valid_room(self, room: str) -> bool:
        return room in self._lookup

    def __iter__(self):
        return iter(self._rooms)

    def __len__(self) -> int:
        return len(self._rooms)
