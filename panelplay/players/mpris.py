# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MprisSession: follows a desktop player (Spotify by default) over MPRIS.

The player is not ours to launch or kill.  The session watches the bus name,
becomes Ready when it appears and drops back to Idle when it vanishes.
Stopping the session only releases our subscriptions.

Right after the player appears (or skips to a new track) Metadata is often
still empty, so the initial fetch goes through RetryPolicy.
"""

import asyncio
import logging

from dbus_fast import Variant

from ..lib.bus import PLAYER_IFACE, BusTransport
from ..lib.config import cfg
from ..lib.errors import PlayerError, PlayerNotFound
from ..lib.retry import EXHAUSTED
from ..lib.session import PlayerSession, SessionState
from ..lib.state import PlayerHandle, Status, Target

log = logging.getLogger(__name__)

DEFAULT_BUS_NAME = "org.mpris.MediaPlayer2.spotify"
VOLUME_STEP = 0.1


def parse_metadata(metadata) -> dict:
    """MPRIS Metadata dict -> ``{"track_id", "artist", "title"}``."""
    metadata = metadata if isinstance(metadata, dict) else {}
    artists = metadata.get("xesam:artist")
    if isinstance(artists, str):
        artists = [artists]
    artist = None
    for candidate in artists or []:
        if isinstance(candidate, str) and candidate.strip():
            artist = candidate
            break
    title = metadata.get("xesam:title")
    if not isinstance(title, str) or not title.strip():
        title = None
    track_id = metadata.get("mpris:trackid")
    return {
        "track_id": str(track_id) if track_id else None,
        "artist": artist,
        "title": title,
    }


def has_artist_and_title(meta) -> bool:
    return bool(meta and meta.get("artist") and meta.get("title"))


class MprisSession(PlayerSession):
    id = "mpris"
    name = "Spotify"

    def __init__(self, bus_name: str | None = None, transport: BusTransport | None = None,
                 enable_volume: bool = True, launch_command=None, **kwargs):
        super().__init__(**kwargs)
        self.bus_name = bus_name or cfg("spotify", "bus_name", default=DEFAULT_BUS_NAME)
        self.transport = transport or BusTransport(self.bus_name)
        self.enable_volume = enable_volume
        self.launch_command = list(launch_command or cfg("spotify", "launch", default=["spotify"]))
        self._watch = None
        self._metadata_task: asyncio.Task | None = None
        self._last_metadata: dict | None = None

    # ── Presence ──

    async def activate(self):
        """Start watching the bus name.  Appearance starts the session."""
        try:
            await self.transport.connect()
            self._watch = await self.transport.watch_name(self._on_appear, self._on_vanish)
        except PlayerError as e:
            log.warning("Cannot watch %s: %s", self.bus_name, e)
            self.spawn(self.notifier.notify_once(
                f"{self.id}:{e.reason}", "Session bus unavailable", str(e)))
            return
        log.info("Watching %s", self.bus_name)

    def _target(self) -> Target:
        return Target(self.bus_name, self.name, self.bus_name)

    def _on_appear(self, owner: str):
        if self.state is not SessionState.IDLE:
            log.debug("%s appeared (%s) while %s", self.bus_name, owner, self.state.value)
            return
        self.spawn(self.start(self._target()))

    async def reattach(self) -> bool:
        """Start again on a player that stayed on the bus after stop().

        NameOwnerChanged only fires on appearance, so an Idle session whose
        player never left has to look the owner up itself.
        """
        if self.state is not SessionState.IDLE:
            return self.ready
        try:
            owner = await self.transport.name_owner()
        except PlayerError as e:
            log.debug("Owner lookup for %s failed: %s", self.bus_name, e)
            return False
        if owner is None:
            return False
        log.info("%s still owned by %s, reattaching", self.bus_name, owner)
        return await self.start(self._target())

    def _on_vanish(self):
        self._vanished()

    async def dispose(self):
        await super().dispose()
        if self._watch is not None:
            await self.transport.unsubscribe(self._watch)
            self._watch = None
        await self.transport.close()

    # ── Lifecycle hooks ──

    async def _open(self, target: Target) -> PlayerHandle:
        owner = await self.transport.name_owner()
        if owner is None:
            raise PlayerNotFound(f"{self.bus_name} is not running")
        return PlayerHandle("bus", owner)

    async def _close(self, handle: PlayerHandle):
        log.debug("Releasing %s (%s), player keeps running", self.bus_name, handle.ref)

    async def _subscribe(self):
        token = await self.transport.subscribe_notifications(
            lambda interface: interface == PLAYER_IFACE, self._on_properties_changed)
        self.spawn(self._refresh())
        return [token]

    async def _unsubscribe(self, token):
        await self.transport.unsubscribe(token)

    # ── State from the player ──

    async def _refresh(self):
        """Fetch PlaybackStatus and Metadata once after the player appeared."""
        handle, generation = self._handle, self._generation
        try:
            status = Status.parse(
                await self.transport.get_property(PLAYER_IFACE, "PlaybackStatus"))
        except PlayerError as e:
            log.warning("Initial PlaybackStatus fetch failed: %s", e)
            status = None
        if status is not None and self._is_live(handle, generation):
            self.reconciler.apply_notification({"status": status}, generation)
        await self._retry_metadata(handle, generation)

    async def _fetch_metadata(self) -> dict:
        meta = parse_metadata(await self.transport.get_property(PLAYER_IFACE, "Metadata"))
        self._last_metadata = meta
        return meta

    async def _retry_metadata(self, handle, generation):
        self._last_metadata = None
        meta = await self.retry_policy.retry(
            self._fetch_metadata, is_valid=has_artist_and_title, name="metadata fetch")
        if meta is EXHAUSTED:
            # show whatever we got last; the label falls back to placeholders
            meta = self._last_metadata
            if meta is None:
                return
        if self._is_live(handle, generation):
            self.reconciler.apply_notification({"metadata": meta}, generation)

    def _on_properties_changed(self, changed: dict):
        handle, generation = self._handle, self._generation
        if not self._is_live(handle, generation):
            return
        changes = {}
        status = Status.parse(changed.get("PlaybackStatus"))
        if status is not None:
            changes["status"] = status
        meta = None
        if "Metadata" in changed:
            meta = parse_metadata(changed["Metadata"])
            changes["metadata"] = meta
        if not changes:
            return

        applied = self.reconciler.apply_notification(changes, generation)
        if applied and status in (Status.PLAYING, Status.PAUSED):
            self._emit("play_state_changed", status is Status.PAUSED)

        if meta is not None and not has_artist_and_title(meta):
            log.debug("Metadata incomplete, fetching again")
            if self._metadata_task is not None and not self._metadata_task.done():
                self._metadata_task.cancel()
            self._metadata_task = self.spawn(self._retry_metadata(handle, generation))

    # ── Commands ──

    async def _toggle(self) -> bool | None:
        await self.transport.call_method(PLAYER_IFACE, "PlayPause")
        status = Status.parse(await self.transport.get_property(PLAYER_IFACE, "PlaybackStatus"))
        if status is Status.PAUSED:
            return True
        if status is Status.PLAYING:
            return False
        return None

    async def _set_volume(self, level: int):
        if not self.enable_volume:
            return
        await self.transport.set_property(PLAYER_IFACE, "Volume", Variant("d", level / 100))

    async def _player_method(self, member: str) -> bool:
        if not self.ready:
            return False
        try:
            await self.transport.call_method(PLAYER_IFACE, member)
        except PlayerError as e:
            self._command_failed(member, e)
            return False
        return True

    async def previous(self) -> bool:
        return await self._player_method("Previous")

    async def next_track(self) -> bool:
        return await self._player_method("Next")

    async def adjust_volume(self, direction: int) -> float | None:
        """Raise (direction > 0) or lower the player volume by one step."""
        if not self.ready or not self.enable_volume:
            return None
        try:
            current = float(await self.transport.get_property(PLAYER_IFACE, "Volume"))
            new = min(1.0, current + VOLUME_STEP) if direction > 0 else max(0.0, current - VOLUME_STEP)
            await self.transport.set_property(PLAYER_IFACE, "Volume", Variant("d", new))
        except PlayerError as e:
            self._command_failed("adjust_volume", e)
            return None
        except (TypeError, ValueError):
            log.warning("Player reported a non-numeric Volume")
            return None
        log.debug("Volume %.2f -> %.2f", current, new)
        return new

    async def launch(self) -> bool:
        """Start the desktop player; the name watch picks it up once it registers."""
        try:
            await asyncio.create_subprocess_exec(
                *self.launch_command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True)
        except FileNotFoundError:
            self.spawn(self.notifier.notify_once(
                f"{self.id}:launch", "Player not found",
                f"{self.launch_command[0]} is not installed"))
            return False
        except OSError as e:
            log.error("Could not launch %s: %s", self.launch_command[0], e)
            return False
        log.info("Launched %s", " ".join(self.launch_command))
        return True

    def get_status(self) -> dict:
        status = super().get_status()
        status["bus_name"] = self.bus_name
        status["volume_control"] = self.enable_volume
        return status
