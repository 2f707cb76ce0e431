"""What the relay core needs from a live transport session."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """One client session owned by the transport layer.

    ``send`` must not block: it hands the frame to the transport and returns
    False without doing anything when the connection is no longer open.
    """

    @property
    def connection_id(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    def send(self, data: str) -> bool: ...
