# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Shared configuration loader for Panelplay services.

The shipped panelplay/config/default.json is read first; the first user config found
is laid over it section by section, so a user file only needs the keys it
changes.  User config search order:
  1. $PANELPLAY_CONFIG                  (explicit override)
  2. ~/.config/panelplay/config.json    (per-user install)
  3. config.json                        (CWD, handy for local dev)

Usage:
    from panelplay.lib.config import cfg

    socket_path = cfg("radio", "socket", default="/tmp/panelplay-mpv.sock")
    timeout     = cfg("transport", "timeout", default=2.0)
    spotify     = cfg("spotify")  # returns the whole dict
"""

import json
import logging
import os
from importlib import resources

logger = logging.getLogger(__name__)

_config: dict | None = None

# package data, so a wheel install ships it too
DEFAULTS = resources.files("panelplay") / "config" / "default.json"

_KNOWN_SECTIONS = ("radio", "spotify", "transport", "retry", "settings", "notifications")


def _search_paths() -> list[str]:
    paths = []
    override = os.environ.get("PANELPLAY_CONFIG")
    if override:
        paths.append(override)
    paths += [
        os.path.expanduser("~/.config/panelplay/config.json"),
        "config.json",
    ]
    return paths


def _read(path: str) -> dict | None:
    """One config file as a dict, or None if missing or unusable."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.error("Config %s is not a JSON object, skipping", path)
        return None
    return data


def _read_defaults() -> dict:
    try:
        data = json.loads(DEFAULTS.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("Shipped defaults %s unreadable: %s", DEFAULTS, e)
        return {}
    return data if isinstance(data, dict) else {}


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    for section in config:
        if section not in _KNOWN_SECTIONS:
            logger.warning("Config %s: unknown section '%s'", path, section)
    for section in ("radio", "spotify"):
        port = (config.get(section) or {}).get("port")
        if port is not None and not (isinstance(port, int) and 0 < port < 65536):
            logger.warning("Config %s: %s.port '%s' is not a valid port", path, section, port)
    timeout = (config.get("transport") or {}).get("timeout")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        logger.warning("Config %s: transport.timeout must be a positive number", path)
    retry = config.get("retry") or {}
    attempts = retry.get("attempts")
    if attempts is not None and (not isinstance(attempts, int) or attempts < 1):
        logger.warning("Config %s: retry.attempts must be >= 1", path)


def _overlay(base: dict, user: dict) -> dict:
    merged = dict(base)
    for section, values in user.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section] = {**merged[section], **values}
        else:
            merged[section] = values
    return merged


def load_config() -> dict:
    """Shipped defaults overlaid with the first user config. Cached."""
    global _config
    if _config is not None:
        return _config

    config = _read_defaults()
    for path in _search_paths():
        user = _read(path)
        if user is None:
            continue
        logger.info("Config loaded from %s", path)
        _validate(user, path)
        config = _overlay(config, user)
        break
    else:
        logger.info("No user config found, using shipped defaults")

    _config = config
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value, ``default`` when the section or key is absent.

    cfg("radio")                        → the whole radio section
    cfg("radio", "socket")              → config["radio"]["socket"]
    cfg("retry", "attempts", default=3)
    """
    section_value = load_config().get(section)
    if key is None:
        return default if section_value is None else section_value
    if not isinstance(section_value, dict):
        return default
    value = section_value.get(key)
    return default if value is None else value


def reload_config():
    """Drop the cache and read everything again (tests, hot reload)."""
    global _config
    _config = None
    return load_config()
