# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Bounded retry for fetches that can race the player settling its own state.

Right after a "track changed" notification an MPRIS player often still
reports empty metadata.  RetryPolicy polls a few times with a cooperative
sleep between attempts and gives up quietly; the UI then shows placeholders.

Usage:
    policy = RetryPolicy()
    result = await policy.retry(fetch_metadata, is_valid=has_artist_and_title)
    if result is EXHAUSTED:
        ...
"""

import asyncio
import logging

from .config import cfg
from .errors import PlayerError

log = logging.getLogger(__name__)


class _Exhausted:
    def __repr__(self):
        return "EXHAUSTED"

    def __bool__(self):
        return False


EXHAUSTED = _Exhausted()


class RetryContext:
    """Bookkeeping for one retryable operation."""

    def __init__(self, max_attempts: int, delay: float):
        self.attempt = 0
        self.max_attempts = max_attempts
        self.delay = delay

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def __repr__(self):
        return f"<RetryContext {self.attempt}/{self.max_attempts} delay={self.delay}s>"


class RetryPolicy:
    def __init__(self, max_attempts: int | None = None, delay: float | None = None,
                 sleep=asyncio.sleep):
        self.max_attempts = int(max_attempts if max_attempts is not None
                                else cfg("retry", "attempts", default=3))
        self.delay = float(delay if delay is not None
                           else cfg("retry", "delay", default=0.5))
        self._sleep = sleep

    async def retry(self, operation, is_valid=bool, *, max_attempts: int | None = None,
                    delay: float | None = None, name: str = "operation"):
        """Await ``operation()`` until ``is_valid(result)`` or attempts run out.

        Player errors count as a failed attempt.  Cancellation propagates so a
        stopping session can abandon the loop mid-sleep.
        """
        ctx = RetryContext(max_attempts or self.max_attempts,
                           self.delay if delay is None else delay)
        while not ctx.exhausted:
            ctx.attempt += 1
            try:
                result = await operation()
            except PlayerError as e:
                log.debug("%s attempt %d/%d failed: %s",
                          name, ctx.attempt, ctx.max_attempts, e)
            else:
                if is_valid(result):
                    if ctx.attempt > 1:
                        log.debug("%s succeeded on attempt %d", name, ctx.attempt)
                    return result
            if not ctx.exhausted:
                await self._sleep(ctx.delay)

        log.info("%s gave up after %d attempts", name, ctx.max_attempts)
        return EXHAUSTED
