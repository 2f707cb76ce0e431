"""Exception types shared by the relay core."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors reported back to a single client."""


class ProtocolError(RelayError):
    """Inbound frame could not be parsed or failed shape validation."""


class NameTaken(RelayError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Username '{name}' is already in use. Please choose another.")
        self.name = name


class AlreadyRegistered(RelayError):
    def __init__(self, name: str) -> None:
        super().__init__(f"You are already registered as '{name}'")
        self.name = name


class NotRegistered(RelayError):
    """Connection has no session yet."""


class StorageUnavailable(Exception):
    """The history backend could not be reached at startup."""


class UnknownMessageType(ProtocolError):
    def __init__(self, msg_type: object) -> None:
        super().__init__(f"Unknown message type: {msg_type}")
        self.msg_type = msg_type
