# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SessionCoordinator owns "the current session" for a service, and Debouncer
collapses bursts of settings changes into one rebuild.

Starting a session through the coordinator stops whichever other session is
active first, so two sessions are never Ready at the same time.
"""

import asyncio
import logging

from .session import PlayerSession
from .state import Target

log = logging.getLogger(__name__)


class SessionCoordinator:
    def __init__(self, session: PlayerSession | None = None):
        self.current: PlayerSession | None = session
        # one replace()/dispose() at a time, so nothing is disposed mid-activate
        self._swap = asyncio.Lock()

    async def start(self, session: PlayerSession, target: Target) -> bool:
        previous = self.current
        if previous is not None and previous is not session:
            log.info("Stopping %s before starting %s", previous.id, session.id)
            await previous.stop()
        self.current = session
        return await session.start(target)

    async def stop(self):
        if self.current is not None:
            await self.current.stop()

    async def replace(self, factory) -> PlayerSession:
        """Dispose the current session and install ``factory()`` in its place.

        Overlapping calls queue up; each one activates its session fully
        before the next disposes it.
        """
        async with self._swap:
            previous, self.current = self.current, None
            if previous is not None:
                log.info("Disposing session %s", previous.id)
                await previous.dispose()
            session = factory()
            self.current = session
            await session.activate()
            log.info("Session %s installed", session.id)
            return session

    async def dispose(self):
        async with self._swap:
            previous, self.current = self.current, None
            if previous is not None:
                await previous.dispose()


class Debouncer:
    """Run ``callback`` (sync or async) once, ``delay`` seconds after the last trigger()."""

    def __init__(self, delay: float, callback):
        self.delay = delay
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self):
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self):
        self._handle = None
        result = self.callback()
        if asyncio.iscoroutine(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            log.error("Debounced callback failed: %s", task.exception())

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
