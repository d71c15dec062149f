#!/usr/bin/env python3
# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Panelplay Radio Service (panelplay-radio)

Plays the user's radio stations through mpv.  One station plays at a time;
picking the playing station again toggles pause, picking another one
replaces it.
"""

import asyncio
import logging

from aiohttp import web

from ..lib.config import cfg
from ..lib.player_base import PlayerService, invalid_json, is_percent, read_json
from ..lib.settings import Settings, default_path
from ..lib.stations import StationCatalog
from .mpv import MpvSession

log = logging.getLogger("panelplay-radio")

DEFAULTS = {
    "volume": 50,
    "radios": [],
    "current-radio-playing": "",
}


def _check_station_fields(data: dict) -> str | None:
    for field in ("name", "url"):
        value = data.get(field)
        if value is not None and not isinstance(value, str):
            return f"{field} must be a string"
    return None


class RadioService(PlayerService):
    id = "radio"
    name = "Radio"
    port = 8781
    setting_keys = ("volume",)

    def __init__(self, settings: Settings | None = None, **mpv_options):
        super().__init__(settings or Settings(DEFAULTS, path=default_path(self.id)))
        self.port = cfg("radio", "port", default=self.port)
        self.stations = StationCatalog(self.settings)
        # nothing is playing when the service comes up
        self.settings.set("current-radio-playing", "")

        self.mpv = MpvSession(
            volume=lambda: self.settings.get("volume", DEFAULTS["volume"]),
            **mpv_options, **self.session_kwargs())
        self.watch_session(self.mpv)
        self._tokens = [
            self.mpv.connect("session_started", self._on_started),
            self.mpv.connect("playback_stopped", self._on_stopped),
            self.mpv.connect("session_failed", lambda reason: self._on_stopped()),
        ]
        self._volume_hid = self.settings.on_change("volume", self._on_volume_setting)

    @property
    def current(self) -> str:
        return self.settings.get("current-radio-playing") or ""

    def _on_started(self, target):
        self.settings.set("current-radio-playing", target.id)

    def _on_stopped(self):
        self.settings.set("current-radio-playing", "")

    def _on_volume_setting(self, key, value):
        if self.mpv.ready:
            self.mpv.spawn(self.mpv.set_volume(value))

    async def set_volume(self, level: int):
        # the settings handler forwards it to mpv
        self.settings.set("volume", level)

    def check_setting(self, key, value):
        if key == "volume" and not is_percent(value):
            return "volume must be an integer 0..100"
        return None

    # ── Station operations ──

    async def play(self, station_id: str) -> dict:
        target = self.stations.target(station_id)
        if target is None:
            return {"status": "error", "error": "unknown station"}
        if self.mpv.ready and self.mpv.target and self.mpv.target.id == station_id:
            return await self.toggle()
        ok = await self.coordinator.start(self.mpv, target)
        return {"status": "ok" if ok else "error", "station": target.to_dict()}

    async def remove_station(self, station_id: str) -> bool:
        if station_id == self.current:
            log.info("Removing the playing station, stopping playback")
            await self.coordinator.stop()
        return self.stations.remove(station_id)

    # ── HTTP ──

    def add_routes(self, app: web.Application):
        app.router.add_get("/radio/stations", self._handle_stations)
        app.router.add_post("/radio/play", self._handle_play)
        app.router.add_post("/radio/stations", self._handle_add)
        app.router.add_post("/radio/stations/update", self._handle_update)
        app.router.add_post("/radio/stations/remove", self._handle_remove)

    async def _handle_stations(self, request: web.Request) -> web.Response:
        return web.json_response({"stations": self.stations.stations(),
                                  "current": self.current or None})

    async def _handle_play(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        station_id = data.get("id")
        if not station_id:
            return web.json_response({"error": "id required"}, status=400)
        result = await self.play(station_id)
        if result.get("error") == "unknown station":
            return web.json_response(result, status=404)
        return web.json_response(result)

    async def _handle_add(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        problem = _check_station_fields(data)
        if problem:
            return web.json_response({"error": problem}, status=400)
        try:
            station = self.stations.add(data.get("name") or "", data.get("url") or "")
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response({"status": "ok", "station": station})

    async def _handle_update(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        problem = _check_station_fields(data)
        if problem:
            return web.json_response({"error": problem}, status=400)
        station = self.stations.update(data.get("id"), name=data.get("name"), url=data.get("url"))
        if station is None:
            return web.json_response({"error": "unknown station"}, status=404)
        return web.json_response({"status": "ok", "station": station})

    async def _handle_remove(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        if not await self.remove_station(data.get("id")):
            return web.json_response({"error": "unknown station"}, status=404)
        return web.json_response({"status": "ok"})

    def get_status(self) -> dict:
        status = super().get_status()
        status["stations"] = len(self.stations.stations())
        status["current"] = self.current or None
        return status

    async def on_stop(self):
        await self.mpv.stop()
        self.settings.disconnect(self._volume_hid)
        for token in self._tokens:
            token.release()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    service = RadioService()
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
