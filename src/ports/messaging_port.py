"""Messaging port: abstract interface for sending DMs to users.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class MessagingError(Exception):
    """Raised when the messaging transport fails to deliver a message."""


class MessagingPort(Protocol):
    """Abstract outbound messaging interface used by core modules.

    One call sends one message unit; there is no batching primitive.
    """

    async def send_message(self, user_key: str, text: str) -> None: ...
