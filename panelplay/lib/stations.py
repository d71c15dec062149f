# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
StationCatalog: the user's radio list, stored in the ``radios`` setting.

Stations are records ``{"id", "name", "url"}``.  Older installs stored each
station as one string, ``"name - url"`` or ``"name - url - id"``; those are
migrated on load (ids generated where missing) and written back once.
"""

import logging
import secrets
import string

from .settings import Settings
from .state import Target

log = logging.getLogger(__name__)

SETTINGS_KEY = "radios"
LEGACY_SEPARATOR = " - "
ID_LENGTH = 10
ID_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()_+-=[]{}|;:,.<>?"


def generate_id(size: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(size))


def parse_legacy(entry: str) -> dict | None:
    """``"name - url[ - id]"`` -> record, or None if it can't be split."""
    parts = entry.split(LEGACY_SEPARATOR)
    if len(parts) == 2:
        name, url = parts
        station_id = generate_id()
    elif len(parts) == 3:
        name, url, station_id = parts
    else:
        return None
    name, url, station_id = name.strip(), url.strip(), station_id.strip()
    if not name or not url:
        return None
    return {"id": station_id or generate_id(), "name": name, "url": url}


class StationCatalog:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._stations: list[dict] = []
        self.load()

    def load(self):
        raw = self.settings.get(SETTINGS_KEY) or []
        stations, migrated = [], False
        for entry in raw:
            if isinstance(entry, str):
                record = parse_legacy(entry)
                migrated = True
                if record is None:
                    log.warning("Dropping unreadable station entry %r", entry)
                    continue
            elif isinstance(entry, dict) and entry.get("name") and entry.get("url"):
                record = {"id": entry.get("id") or generate_id(),
                          "name": entry["name"], "url": entry["url"]}
                migrated = migrated or record["id"] != entry.get("id")
            else:
                log.warning("Dropping invalid station entry %r", entry)
                migrated = True
                continue
            stations.append(record)
        self._stations = stations
        if migrated:
            log.info("Migrated %d stations to structured records", len(stations))
            self._store()

    def _store(self):
        self.settings.set(SETTINGS_KEY, [dict(s) for s in self._stations])

    def stations(self) -> list[dict]:
        return [dict(s) for s in self._stations]

    def get(self, station_id: str) -> dict | None:
        for station in self._stations:
            if station["id"] == station_id:
                return dict(station)
        return None

    def target(self, station_id: str) -> Target | None:
        station = self.get(station_id)
        if station is None:
            return None
        return Target(station["id"], station["name"], station["url"])

    def add(self, name: str, url: str) -> dict:
        name, url = name.strip(), url.strip()
        if not name or not url:
            raise ValueError("station needs a name and a url")
        existing = {s["id"] for s in self._stations}
        station_id = generate_id()
        while station_id in existing:
            station_id = generate_id()
        record = {"id": station_id, "name": name, "url": url}
        self._stations.append(record)
        self._store()
        log.info("Added station %s (%s)", name, station_id)
        return dict(record)

    def update(self, station_id: str, name: str | None = None,
               url: str | None = None) -> dict | None:
        """Edit a station in place.  The id never changes."""
        for station in self._stations:
            if station["id"] != station_id:
                continue
            if name is not None and name.strip():
                station["name"] = name.strip()
            if url is not None and url.strip():
                station["url"] = url.strip()
            self._store()
            return dict(station)
        return None

    def remove(self, station_id: str) -> bool:
        before = len(self._stations)
        self._stations = [s for s in self._stations if s["id"] != station_id]
        if len(self._stations) == before:
            return False
        self._store()
        log.info("Removed station %s", station_id)
        return True
