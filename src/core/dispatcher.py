"""
DM Concierge - Message Dispatcher.

Delivers a reply as separate DMs, one at a time, with a short randomized
pause between units so a multi-message answer reads like someone typing
rather than a burst notification.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

if TYPE_CHECKING:
    from src.ports.messaging_port import MessagingPort

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Paced, strictly ordered delivery over a MessagingPort."""

    def __init__(
        self,
        messenger: MessagingPort,
        min_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if min_delay is None or max_delay is None:
            from src.config import settings
            min_delay = settings.PACING_MIN_MS / 1000 if min_delay is None else min_delay
            max_delay = settings.PACING_MAX_MS / 1000 if max_delay is None else max_delay
        if not 0 <= min_delay <= max_delay:
            raise ValueError(f"invalid pacing bounds: {min_delay}..{max_delay}")

        self._messenger = messenger
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._uniform = uniform

    async def deliver(self, user_key: str, messages: Sequence[str]) -> None:
        """Send each message in order, pausing between consecutive ones.

        A transport failure stops the sequence and propagates; messages
        already sent stay sent.
        """
        for index, text in enumerate(messages):
            if index > 0:
                await self._sleep(self._uniform(self._min_delay, self._max_delay))
            await self._messenger.send_message(user_key, text)
        logger.info("Delivered %d message(s) to %s", len(messages), user_key)

    async def send_best_effort(self, user_key: str, text: str) -> bool:
        """Send one message without ever raising. Returns whether it went out."""
        try:
            await self._messenger.send_message(user_key, text)
            return True
        except Exception as exc:
            logger.error("Best-effort message to %s failed: %s", user_key, exc)
            return False
