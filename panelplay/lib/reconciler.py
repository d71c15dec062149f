# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
StateReconciler: the one place PlaybackState changes.

Two streams feed it and may interleave freely:

  * local command outcomes   apply_local()         optimistic
  * player notifications     apply_notification()  authoritative

Both end in _commit(), which swaps in a new immutable PlaybackState and tells
subscribers.  A notification always replaces the fields it carries, so the last
word from the player wins over an earlier optimistic guess.

Each session start or stop opens a new generation.  Results that were started
under an older generation (a late reply, a retry that outlived its session)
are dropped instead of resurrecting a stopped player.
"""

import logging

from .state import PlaybackState, Status
from .transport import SubscriptionToken

log = logging.getLogger(__name__)


class StateReconciler:
    def __init__(self):
        self._state = PlaybackState.stopped()
        self._generation = 0
        self._track_hint: str | None = None
        self._subscribers: dict[int, object] = {}

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int | None) -> bool:
        return generation is None or generation == self._generation

    # ── Subscribers ──

    def subscribe(self, callback) -> SubscriptionToken:
        """Call ``callback(new_state)`` after every accepted mutation."""
        token = SubscriptionToken("state")
        self._subscribers[token.id] = callback
        token.on_release(lambda: self._subscribers.pop(token.id, None))
        return token

    def unsubscribe(self, token: SubscriptionToken) -> None:
        token.release()

    # ── Lifecycle inputs ──

    def begin(self, track_id: str) -> int:
        """A session became ready on ``track_id``.  Returns the new generation."""
        self._generation += 1
        self._track_hint = track_id
        self._commit(PlaybackState(Status.PLAYING, track_id), "session_started")
        return self._generation

    def reset(self) -> int:
        """The session stopped or the player vanished."""
        self._generation += 1
        self._track_hint = None
        self._commit(PlaybackState.stopped(), "stopped")
        return self._generation

    # ── Mutations ──

    def apply_local(self, status: Status, generation: int | None = None) -> bool:
        """Optimistic update after a command succeeded."""
        if not self.is_current(generation):
            log.debug("Dropping stale local outcome %s (gen %s != %d)",
                      status, generation, self._generation)
            return False
        return self._commit(self._with_status(self._state, status), "command")

    def apply_notification(self, changes: dict, generation: int | None = None) -> bool:
        """Authoritative update from the player.

        ``changes`` may carry ``status`` (a Status) and/or ``metadata`` (a dict
        with ``track_id``, ``artist``, ``title``).  Metadata replaces all three
        fields; missing keys become None rather than keeping old values.
        """
        if not self.is_current(generation):
            log.debug("Dropping stale notification %s (gen %s != %d)",
                      changes, generation, self._generation)
            return False

        new = self._state
        if "metadata" in changes:
            meta = changes["metadata"] or {}
            track_id = meta.get("track_id")
            if track_id:
                self._track_hint = track_id
            fields = {
                "artist": meta.get("artist"),
                "title": meta.get("title"),
            }
            if new.status is not Status.STOPPED:
                fields["track_id"] = track_id or self._track_hint
            new = new.with_changes(**fields)
        if changes.get("status") is not None:
            new = self._with_status(new, changes["status"])
        return self._commit(new, "notification")

    def _with_status(self, state: PlaybackState, status: Status) -> PlaybackState:
        if status is Status.STOPPED:
            return PlaybackState.stopped()
        track_id = state.track_id or self._track_hint
        if track_id is None:
            log.debug("No track id known, keeping %s", state.status.value)
            return state
        return state.with_changes(status=status, track_id=track_id)

    def _commit(self, new: PlaybackState, reason: str) -> bool:
        if new == self._state:
            return False
        old, self._state = self._state, new
        log.debug("State %s: %s -> %s", reason, old, new)
        for callback in list(self._subscribers.values()):
            try:
                callback(new)
            except Exception as e:
                log.error("State subscriber error: %s", e)
        return True
