# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlayerSession: lifecycle of one external player process or bus identity.

    Idle ──start()──> Starting ──ok──> Ready ──stop()──> Stopping ──> Idle
                          └──fail──> Idle (session_failed)

A session is the only thing that issues commands to its player.  Every
transport failure is caught here and turned into an event, a log line or a
one-shot notification; callers never see a PlayerError.

Subclass contract:

    class MySession(PlayerSession):
        id = "mpv"

        async def _open(self, target) -> PlayerHandle: ...
        async def _close(self, handle): ...
        async def _subscribe(self) -> list[SubscriptionToken]: ...
        async def _toggle(self) -> bool | None: ...       # None = busy / no data
        async def _set_volume(self, level: int): ...

Events (connect(event, callback)):
    session_started(target)  session_failed(reason)
    play_state_changed(is_paused)  playback_stopped()
"""

import asyncio
import logging
from enum import Enum

from .errors import PlayerError
from .notify import Notifier
from .reconciler import StateReconciler
from .retry import RetryPolicy
from .state import PlayerHandle, Status, Target
from .transport import SubscriptionToken

log = logging.getLogger(__name__)

EVENTS = ("session_started", "session_failed", "play_state_changed", "playback_stopped")

FAILURE_TITLES = {
    "not_found": "Player not found",
    "connection": "Player not reachable",
    "timeout": "Player not responding",
    "protocol": "Player sent an invalid reply",
}


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


class PlayerSession:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""

    def __init__(self, reconciler: StateReconciler | None = None,
                 retry: RetryPolicy | None = None,
                 notifier: Notifier | None = None):
        self.reconciler = reconciler or StateReconciler()
        self.retry_policy = retry or RetryPolicy()
        self.notifier = notifier or Notifier()
        self.state = SessionState.IDLE
        self.target: Target | None = None
        self._handle: PlayerHandle | None = None
        self._generation: int | None = None
        self._subscriptions: list[SubscriptionToken] = []
        self._tasks: set[asyncio.Task] = set()
        self._listeners: dict[str, dict[int, object]] = {e: {} for e in EVENTS}

    # ── Abstract hooks ──

    async def _open(self, target: Target) -> PlayerHandle:
        raise NotImplementedError

    async def _close(self, handle: PlayerHandle):
        raise NotImplementedError

    async def _subscribe(self) -> list[SubscriptionToken]:
        return []

    async def _unsubscribe(self, token: SubscriptionToken):
        token.release()

    async def _toggle(self) -> bool | None:
        raise NotImplementedError

    async def _set_volume(self, level: int):
        raise NotImplementedError

    # ── Events ──

    def connect(self, event: str, callback) -> SubscriptionToken:
        if event not in self._listeners:
            raise ValueError(f"unknown session event {event!r}")
        token = SubscriptionToken(f"{self.id}:{event}")
        self._listeners[event][token.id] = callback
        token.on_release(lambda: self._listeners[event].pop(token.id, None))
        return token

    def _emit(self, event: str, *args):
        for callback in list(self._listeners[event].values()):
            try:
                callback(*args)
            except Exception as e:
                log.error("%s %s listener error: %s", self.id, event, e)

    # ── Properties ──

    @property
    def ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def handle(self) -> PlayerHandle | None:
        return self._handle

    def _is_live(self, handle: PlayerHandle | None, generation: int | None) -> bool:
        """True if a delayed result still belongs to the running session."""
        return (handle is not None and handle.valid and handle is self._handle
                and self.reconciler.is_current(generation))

    # ── Lifecycle ──

    async def start(self, target: Target) -> bool:
        """Start playing ``target``.  Returns True once Ready."""
        if self.state in (SessionState.STARTING, SessionState.STOPPING):
            log.info("%s: start(%s) ignored while %s", self.id, target.id, self.state.value)
            return False
        if self.state is SessionState.READY:
            log.info("%s: switching %s -> %s", self.id,
                     self.target.id if self.target else None, target.id)
            await self.stop()

        self.state = SessionState.STARTING
        log.info("%s: starting %s (%s)", self.id, target.name, target.uri)
        try:
            handle = await self._open(target)
        except PlayerError as e:
            self._fail(e)
            return False
        except asyncio.CancelledError:
            if self.state is SessionState.STARTING:
                self.state = SessionState.IDLE
                self.target = None
            raise
        except Exception as e:
            log.exception("%s: unexpected error opening %s", self.id, target.id)
            self._fail(PlayerError(f"{type(e).__name__}: {e}"))
            return False

        if self.state is not SessionState.STARTING:
            # stop() ran while we were opening
            handle.invalidate()
            try:
                await self._close(handle)
            except PlayerError as e:
                log.warning("%s: close failed: %s", self.id, e)
            return False

        self._handle = handle
        self.target = target
        self.state = SessionState.READY
        generation = self._generation = self.reconciler.begin(target.id)
        self.notifier.reset_all()

        try:
            tokens = await self._subscribe()
        except PlayerError as e:
            log.warning("%s: notifications unavailable: %s", self.id, e)
            tokens = []

        if not self._is_live(handle, generation):
            # stop() or a vanish ran while we were subscribing
            log.info("%s: %s went away while subscribing", self.id, target.id)
            for token in tokens:
                try:
                    await self._unsubscribe(token)
                except PlayerError as e:
                    log.debug("%s: unsubscribe failed: %s", self.id, e)
            return False
        self._subscriptions = tokens

        log.info("%s: ready on %s", self.id, target.id)
        self._emit("session_started", target)
        return True

    def _fail(self, error: PlayerError):
        self.state = SessionState.IDLE
        self.target = None
        log.warning("%s: start failed (%s): %s", self.id, error.reason, error)
        title = FAILURE_TITLES.get(error.reason, "Player error")
        self.spawn(self.notifier.notify_once(f"{self.id}:{error.reason}", title, str(error)))
        self._emit("session_failed", error.reason)

    async def stop(self):
        """Force the player down.  Safe to call in any state, no-op when Idle."""
        if self.state is SessionState.IDLE:
            return
        if self.state is SessionState.STOPPING:
            return
        was_starting = self.state is SessionState.STARTING
        self.state = SessionState.STOPPING

        self._cancel_tasks()
        await self._release_subscriptions()

        handle, self._handle = self._handle, None
        if handle is not None:
            handle.invalidate()
            try:
                await self._close(handle)
            except PlayerError as e:
                log.warning("%s: close failed: %s", self.id, e)

        self.target = None
        self._generation = None
        self.state = SessionState.IDLE
        if was_starting:
            return
        self.reconciler.reset()
        log.info("%s: stopped", self.id)
        self._emit("playback_stopped")

    async def dispose(self):
        """Tear down for good (session replaced or service shutting down)."""
        await self.stop()
        self._cancel_tasks()

    async def activate(self):
        """Hook for sessions that start watching for their player on creation."""

    def _vanished(self):
        """The player went away on its own.  Clears state synchronously."""
        if self._handle is None:
            return
        log.info("%s: player vanished", self.id)
        self._handle.invalidate()
        self._handle = None
        self.target = None
        self._generation = None
        self._cancel_tasks()
        tokens, self._subscriptions = self._subscriptions, []
        for token in tokens:
            self.spawn(self._unsubscribe(token))
        self.state = SessionState.IDLE
        self.reconciler.reset()
        self._emit("playback_stopped")

    # ── Commands ──

    async def toggle_pause(self) -> bool | None:
        """Toggle pause.  Returns the new paused flag, or None if dropped."""
        if not self.ready:
            log.debug("%s: toggle ignored while %s", self.id, self.state.value)
            return None
        handle, generation = self._handle, self._generation
        try:
            paused = await self._toggle()
        except PlayerError as e:
            self._command_failed("toggle", e)
            return None
        if paused is None or not self._is_live(handle, generation):
            return None
        # the player's own notification may have got there first and emitted
        if self.reconciler.apply_local(Status.PAUSED if paused else Status.PLAYING, generation):
            self._emit("play_state_changed", paused)
        return paused

    async def set_volume(self, level) -> None:
        if not self.ready:
            return
        level = max(0, min(100, int(level)))
        try:
            await self._set_volume(level)
        except PlayerError as e:
            self._command_failed("set_volume", e)

    def _command_failed(self, command: str, error: PlayerError):
        log.warning("%s: %s failed (%s): %s", self.id, command, error.reason, error)
        if error.reason in ("connection", "timeout", "not_found"):
            title = FAILURE_TITLES[error.reason]
            self.spawn(self.notifier.notify_once(f"{self.id}:{error.reason}", title, str(error)))

    # ── Background work ──

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` as a task that stop() cancels."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("%s: background task failed: %s", self.id, task.exception())

    def _cancel_tasks(self):
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def _release_subscriptions(self):
        tokens, self._subscriptions = self._subscriptions, []
        for token in tokens:
            try:
                await self._unsubscribe(token)
            except PlayerError as e:
                log.debug("%s: unsubscribe failed: %s", self.id, e)

    def get_status(self) -> dict:
        return {
            "session": self.id,
            "state": self.state.value,
            "target": self.target.to_dict() if self.target else None,
            "playback": self.reconciler.state.to_dict(),
        }
