# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Settings: a small key/value store with change notification.

Each service seeds it with its own defaults; stored values from the JSON file
(if any) override them.  Writes go to disk atomically.

Usage:
    settings = Settings({"volume": 50}, path="~/.config/panelplay/settings.json")
    hid = settings.on_change("volume", lambda key, value: ...)
    settings.set("volume", 70)
    settings.disconnect(hid)
"""

import itertools
import json
import logging
import os
import tempfile

from .config import cfg

log = logging.getLogger(__name__)


def default_path(service: str) -> str | None:
    """Per-service settings file from the ``settings.path`` template."""
    template = cfg("settings", "path", default=None)
    return template.format(service=service) if template else None


class Settings:
    def __init__(self, defaults: dict | None = None, path: str | None = None):
        self.path = os.path.expanduser(path) if path else None
        self._values = dict(defaults or {})
        self._handlers: dict[int, tuple[str | None, object]] = {}
        self._ids = itertools.count(1)
        if self.path:
            self._values.update(self._load())

    def _load(self) -> dict:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            log.error("Could not read settings %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            log.error("Settings %s is not a JSON object, ignoring", self.path)
            return {}
        log.info("Settings loaded from %s (%d keys)", self.path, len(data))
        return data

    def save(self):
        """Write all values to ``path`` atomically (no-op without a path)."""
        if not self.path:
            return
        d = os.path.dirname(self.path) or "."
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._values, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, key: str, default=None):
        return self._values.get(key, default)

    def set(self, key: str, value) -> bool:
        """Store ``value``.  Returns False (and notifies nobody) if unchanged."""
        if key in self._values and self._values[key] == value:
            return False
        self._values[key] = value
        try:
            self.save()
        except OSError as e:
            log.error("Could not save settings to %s: %s", self.path, e)
        for hkey, handler in list(self._handlers.values()):
            if hkey is not None and hkey != key:
                continue
            try:
                handler(key, value)
            except Exception as e:
                log.error("Settings handler for %s failed: %s", key, e)
        return True

    def on_change(self, key: str | None, handler) -> int:
        """Call ``handler(key, value)`` when ``key`` changes (any key if None)."""
        hid = next(self._ids)
        self._handlers[hid] = (key, handler)
        return hid

    def disconnect(self, handler_id: int):
        if self._handlers.pop(handler_id, None) is None:
            log.debug("Settings handler %d was not connected", handler_id)

    def __contains__(self, key: str):
        return key in self._values
