"""
DM Concierge - Rate Limiter.

Fixed-window request gate per user key, checked before any other work on
an inbound message. Storage errors propagate: a broken gate must abort the
turn, never wave requests through.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from src.data.db import RateLimitDB

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int


class RateLimiter:
    """Per-user window of max_requests per window_seconds."""

    def __init__(
        self,
        rate_limit_db: RateLimitDB,
        max_requests: int | None = None,
        window_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests is None or window_seconds is None:
            from src.config import settings
            max_requests = max_requests or settings.RATE_LIMIT_MAX_REQUESTS
            window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS

        self._db = rate_limit_db
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock

    def check_and_consume(self, user_key: str) -> RateLimitDecision:
        """Count this request against the user's window and decide.

        Every call persists the window, including denied ones.
        """
        record = self._db.consume(user_key, self._clock(), self._max, self._window)

        if record.request_count > self._max:
            logger.info("Rate limit reached for %s (%d/%d)", user_key, record.request_count, self._max)
            return RateLimitDecision(allowed=False, remaining=0)

        return RateLimitDecision(allowed=True, remaining=self._max - record.request_count)
