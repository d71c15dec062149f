# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MpvSession: plays one stream URL in a local mpv process controlled over its
JSON IPC socket.

mpv is started fresh for every target and force-killed on stop; there is no
attempt to reuse a running player for the next station.
"""

import asyncio
import logging
import os

from ..lib.config import cfg
from ..lib.errors import PlayerConnectionError, PlayerError, PlayerNotFound, ProtocolError
from ..lib.session import PlayerSession
from ..lib.state import PlayerHandle, Status, Target
from ..lib.transport import BUSY, SocketTransport, encode_command

log = logging.getLogger(__name__)

DEFAULT_SOCKET = "/tmp/panelplay-mpv.sock"
POLL_INTERVAL = 0.1
KILL_TIMEOUT = 2.0
DEFAULT_VOLUME = 50


def build_argv(mpv: str, socket_path: str, volume: int, uri: str) -> list[str]:
    return [
        mpv,
        f"--volume={volume}",
        "--demuxer-lavf-o=extension_picky=0",
        f"--input-ipc-server={socket_path}",
        "--loop-playlist=force",
        "--no-video",
        "--ytdl-format=best*[vcodec=none]",
        "--ytdl-raw-options-add=force-ipv4=",
        uri,
    ]


class MpvSession(PlayerSession):
    id = "mpv"
    name = "mpv"

    def __init__(self, socket_path: str | None = None, mpv: str | None = None,
                 volume=DEFAULT_VOLUME, start_timeout: float | None = None,
                 transport: SocketTransport | None = None, **kwargs):
        super().__init__(**kwargs)
        self.socket_path = socket_path or cfg("radio", "socket", default=DEFAULT_SOCKET)
        self.mpv = mpv or cfg("radio", "mpv", default="mpv")
        self.start_timeout = float(start_timeout if start_timeout is not None
                                   else cfg("radio", "start_timeout", default=5.0))
        # int, or a callable returning the current volume setting
        self._volume = volume
        self.transport = transport or SocketTransport(self.socket_path)

    @property
    def volume(self) -> int:
        level = self._volume() if callable(self._volume) else self._volume
        try:
            return max(0, min(100, int(level)))
        except (TypeError, ValueError):
            log.warning("Ignoring volume setting %r, using %d", level, DEFAULT_VOLUME)
            return DEFAULT_VOLUME

    # ── Lifecycle hooks ──

    def _unlink_socket(self):
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Could not remove stale socket %s: %s", self.socket_path, e)

    async def _open(self, target: Target) -> PlayerHandle:
        self._unlink_socket()
        argv = build_argv(self.mpv, self.socket_path, self.volume, target.uri)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL)
        except FileNotFoundError:
            raise PlayerNotFound(f"{self.mpv} not found, is mpv installed?") from None
        except OSError as e:
            raise PlayerConnectionError(f"could not launch {self.mpv}: {e}") from e

        handle = PlayerHandle("process", proc)
        # Wait for the IPC socket to accept connections
        attempts = max(1, int(self.start_timeout / POLL_INTERVAL))
        for _ in range(attempts):
            if proc.returncode is not None:
                raise PlayerConnectionError(f"mpv exited immediately (rc={proc.returncode})")
            if await self.transport.ping():
                log.info("mpv %d up for %s", proc.pid, target.id)
                return handle
            await asyncio.sleep(POLL_INTERVAL)

        await self._close(handle)
        raise PlayerConnectionError(
            f"mpv IPC socket {self.socket_path} not ready after {self.start_timeout:.1f}s")

    async def _close(self, handle: PlayerHandle):
        proc = handle.ref
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), KILL_TIMEOUT)
            except asyncio.TimeoutError:
                log.warning("mpv %s did not exit within %.1fs", proc.pid, KILL_TIMEOUT)
        self._unlink_socket()

    async def _subscribe(self):
        token = await self.transport.subscribe_notifications(
            lambda event: event.get("name") in self.transport.observe,
            self._on_property,
            on_close=self._on_observer_closed)
        return [token]

    async def _unsubscribe(self, token):
        await self.transport.unsubscribe(token)

    def _on_property(self, change: dict):
        generation = self._generation
        if "pause" in change and isinstance(change["pause"], bool):
            paused = change["pause"]
            status = Status.PAUSED if paused else Status.PLAYING
            if self.reconciler.apply_notification({"status": status}, generation):
                self._emit("play_state_changed", paused)
        if "media-title" in change and self.target is not None:
            title = change["media-title"]
            self.reconciler.apply_notification({"metadata": {
                "track_id": self.target.id,
                "artist": self.target.name,
                "title": title if isinstance(title, str) else None,
            }}, generation)

    def _on_observer_closed(self):
        handle = self._handle
        if handle is None or not handle.valid:
            return
        log.info("mpv closed its IPC connection")
        self._vanished()
        asyncio.ensure_future(self._close(handle))

    # ── Commands ──

    async def _command(self, *command):
        reply = await self.transport.send(encode_command(*command))
        if reply is BUSY:
            return BUSY
        if reply.get("error") != "success":
            raise ProtocolError(f"mpv {command[0]} failed: {reply.get('error')}")
        return reply

    async def _toggle(self) -> bool | None:
        if await self._command("cycle", "pause") is BUSY:
            return None
        reply = await self._command("get_property", "pause")
        if reply is BUSY:
            return None
        paused = reply.get("data")
        if not isinstance(paused, bool):
            raise ProtocolError(f"pause property is {paused!r}")
        return paused

    async def _set_volume(self, level: int):
        if await self._command("set_property", "volume", level) is BUSY:
            log.debug("Volume %d dropped, mpv busy", level)

    async def get_property(self, name: str):
        """Read one mpv property, None if busy or not Ready."""
        if not self.ready:
            return None
        try:
            reply = await self._command("get_property", name)
        except PlayerError as e:
            log.debug("get_property %s failed: %s", name, e)
            return None
        if reply is BUSY:
            return None
        return reply.get("data")
