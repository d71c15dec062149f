#!/usr/bin/env python3
# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Panelplay Spotify Service (panelplay-spotify)

Panel controls for a desktop MPRIS player: track label, play/pause,
previous/next and scroll-to-change-volume.  The MPRIS session is rebuilt
(debounced) whenever the bus name or the volume-control switch changes.
"""

import asyncio
import logging

from aiohttp import web

from ..lib.config import cfg
from ..lib.coordinator import Debouncer
from ..lib.player_base import PlayerService, invalid_json, read_json
from ..lib.settings import Settings, default_path
from .mpris import DEFAULT_BUS_NAME, MprisSession

log = logging.getLogger("panelplay-spotify")

DEFAULTS = {
    "bus-name": DEFAULT_BUS_NAME,
    "enable-volume-control": True,
    "enable-middle-click": True,
    "show-playback-controls": True,
}

# settings that need a fresh MPRIS session
REBUILD_KEYS = ("bus-name", "enable-volume-control")


class SpotifyService(PlayerService):
    id = "spotify"
    name = "Spotify"
    port = 8782
    setting_keys = tuple(DEFAULTS)

    def __init__(self, settings: Settings | None = None, session_factory=None):
        if settings is None:
            defaults = dict(DEFAULTS)
            defaults["bus-name"] = cfg("spotify", "bus_name", default=DEFAULT_BUS_NAME)
            settings = Settings(defaults, path=default_path(self.id))
        super().__init__(settings)
        self.port = cfg("spotify", "port", default=self.port)
        self._session_factory = session_factory or self._make_session
        self.rebuilds = 0
        self._debouncer = Debouncer(
            float(cfg("spotify", "rebuild_debounce", default=0.3)), self.rebuild)
        self._settings_hid = self.settings.on_change(None, self._on_setting)

    def _make_session(self) -> MprisSession:
        return MprisSession(
            bus_name=self.settings.get("bus-name"),
            enable_volume=bool(self.settings.get("enable-volume-control")),
            **self.session_kwargs())

    def _install(self) -> MprisSession:
        session = self._session_factory()
        self.watch_session(session)
        return session

    async def rebuild(self):
        """Throw away the MPRIS session and start watching with current settings."""
        self.rebuilds += 1
        self.unwatch_session()
        session = await self.coordinator.replace(self._install)
        log.info("MPRIS session rebuilt for %s", session.bus_name)

    def _on_setting(self, key, value):
        if key in REBUILD_KEYS:
            log.debug("%s changed, rebuild scheduled", key)
            self._debouncer.trigger()

    # ── Commands ──

    def check_setting(self, key, value):
        if key == "bus-name":
            if not isinstance(value, str) or not value.strip():
                return "bus-name must be a non-empty string"
        elif not isinstance(value, bool):
            return f"{key} must be true or false"
        return None

    async def toggle(self) -> dict:
        session = self.session
        if session is not None and not session.ready:
            # after /player/stop the player may still be on the bus
            await session.reattach()
        if (session is None or not session.ready) and self.settings.get("enable-middle-click"):
            launched = session is not None and await session.launch()
            return {"status": "launching" if launched else "idle"}
        return await super().toggle()

    async def step_volume(self, direction: str) -> dict:
        if not self.settings.get("enable-volume-control"):
            return {"status": "disabled"}
        session = self.session
        if session is None or not session.ready:
            return {"status": "idle"}
        volume = await session.adjust_volume(1 if direction == "up" else -1)
        if volume is None:
            return {"status": "error"}
        return {"status": "ok", "volume": round(volume, 2)}

    # ── HTTP ──

    def add_routes(self, app: web.Application):
        app.router.add_post("/player/next", self._handle_next)
        app.router.add_post("/player/prev", self._handle_prev)
        app.router.add_post("/player/volume/step", self._handle_volume_step)
        app.router.add_post("/player/launch", self._handle_launch)

    async def _handle_next(self, request: web.Request) -> web.Response:
        ok = self.session is not None and await self.session.next_track()
        return web.json_response({"status": "ok" if ok else "error"})

    async def _handle_prev(self, request: web.Request) -> web.Response:
        ok = self.session is not None and await self.session.previous()
        return web.json_response({"status": "ok" if ok else "error"})

    async def _handle_volume_step(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        direction = data.get("direction")
        if direction not in ("up", "down"):
            return web.json_response({"error": "direction must be 'up' or 'down'"}, status=400)
        return web.json_response(await self.step_volume(direction))

    async def _handle_launch(self, request: web.Request) -> web.Response:
        ok = self.session is not None and await self.session.launch()
        return web.json_response({"status": "ok" if ok else "error"})

    def get_status(self) -> dict:
        status = super().get_status()
        status["rebuilds"] = self.rebuilds
        status["show_playback_controls"] = bool(self.settings.get("show-playback-controls"))
        return status

    # ── Lifecycle ──

    async def on_start(self):
        await self.rebuild()

    async def on_stop(self):
        self._debouncer.cancel()
        self.settings.disconnect(self._settings_hid)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    service = SpotifyService()
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
