"""Throttles outbound Apollo calls.

Policy: a sliding window of call timestamps over the trailing minute. When the
window is full, the caller sleeps until the oldest call leaves it (plus a small
buffer). A fixed delay is then always applied before the call is recorded.
There is no jitter and no backoff; retries are not this module's concern.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from leadscout.models import RateLimitCall

log = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
BUFFER_SECONDS = 0.1


class RateLimiter:
    """In-process limiter; history is per instance."""

    def __init__(
        self,
        delay_ms: int = 1000,
        requests_per_minute: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self.delay = max(delay_ms, 0) / 1000.0
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= WINDOW_SECONDS:
            self._calls.popleft()

    async def wait(self) -> None:
        """Suspend until the next call is allowed, then record it."""
        async with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) >= self.requests_per_minute:
                wait = WINDOW_SECONDS - (now - self._calls[0]) + BUFFER_SECONDS
                if wait > 0:
                    log.debug("Rate limiter: window full, waiting %.1fs", wait)
                    await asyncio.sleep(wait)
                self._prune(self._clock())
            if self.delay > 0:
                await asyncio.sleep(self.delay)
            self._calls.append(self._clock())

    def reset(self) -> None:
        """Clear call history; the client calls this after a hard (non-retryable) failure."""
        self._calls.clear()

    @property
    def calls_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._calls)


class StoreRateLimiter:
    """Same policy as :class:`RateLimiter`, with the window kept in the database.

    Every process that uses the same ``key`` against the same database draws
    from one budget.  A slot is reserved by inserting the call row first and
    counting the window in the same write transaction; the insert holds the
    database write lock until commit, so concurrent reservations serialize.
    Timestamps are wall-clock seconds since they are compared across processes.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        key: str = "apollo",
        delay_ms: int = 1000,
        requests_per_minute: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self._session_factory = session_factory
        self.key = key
        self.delay = max(delay_ms, 0) / 1000.0
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._lock = asyncio.Lock()

    def _window(self, session: Session, now: float) -> tuple[int, float | None]:
        session.execute(delete(RateLimitCall).where(
            RateLimitCall.limiter_key == self.key,
            RateLimitCall.called_at <= now - WINDOW_SECONDS,
        ))
        count, oldest = session.execute(
            select(func.count(RateLimitCall.id), func.min(RateLimitCall.called_at))
            .where(RateLimitCall.limiter_key == self.key)
        ).one()
        return count, oldest

    def _reserve(self, now: float) -> float | None:
        """Claim a slot for a call made after the fixed delay.

        Returns None when the slot was committed, otherwise the seconds to wait
        before trying again (the reservation is rolled back).
        """
        with self._session_factory() as session:
            session.add(RateLimitCall(limiter_key=self.key, called_at=now + self.delay))
            session.flush()
            count, oldest = self._window(session, now)
            if count <= self.requests_per_minute:
                session.commit()
                return None
            session.rollback()
        return WINDOW_SECONDS - (now - oldest) + BUFFER_SECONDS

    async def wait(self) -> None:
        async with self._lock:
            while True:
                wait = self._reserve(self._clock())
                if wait is None:
                    break
                log.debug("Shared rate limiter %s: window full, waiting %.1fs", self.key, wait)
                await asyncio.sleep(max(wait, BUFFER_SECONDS))
            if self.delay > 0:
                await asyncio.sleep(self.delay)

    def reset(self) -> None:
        with self._session_factory() as session:
            session.execute(delete(RateLimitCall).where(RateLimitCall.limiter_key == self.key))
            session.commit()

    @property
    def calls_in_window(self) -> int:
        with self._session_factory() as session:
            count, _ = self._window(session, self._clock())
            session.commit()
            return count


def build_rate_limiter(settings, session_factory: Callable[[], Session] | None = None):
    """Limiter for *settings*; the database-backed one when sharing is enabled."""
    if settings.shared_rate_limit and session_factory is not None:
        return StoreRateLimiter(
            session_factory, delay_ms=settings.delay_ms,
            requests_per_minute=settings.requests_per_minute,
        )
    return RateLimiter(delay_ms=settings.delay_ms, requests_per_minute=settings.requests_per_minute)
