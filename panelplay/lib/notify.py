# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""One-shot desktop notifications through notify-send.

A repeating failure (the player is not installed, the socket never appears)
should tell the user once, not on every click.  Keys stay latched until
reset() or reset_all(), which sessions call after a successful start.
"""

import asyncio
import logging

from .config import cfg

log = logging.getLogger(__name__)

APP_NAME = "Panelplay"


class Notifier:
    def __init__(self, enabled: bool | None = None, command: str = "notify-send"):
        if enabled is None:
            enabled = bool(cfg("notifications", "enabled", default=True))
        self.enabled = enabled
        self.command = command
        self._shown: set[str] = set()

    def was_shown(self, key: str) -> bool:
        return key in self._shown

    def reset(self, key: str):
        self._shown.discard(key)

    def reset_all(self):
        self._shown.clear()

    async def notify_once(self, key: str, title: str, body: str = "") -> bool:
        """Show a notification unless ``key`` already fired.  True if shown."""
        if key in self._shown:
            log.debug("Notification %s already shown", key)
            return False
        self._shown.add(key)
        log.info("Notify [%s] %s: %s", key, title, body)
        if not self.enabled:
            return False
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, "--app-name", APP_NAME, title, body,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE)
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=5)
        except FileNotFoundError:
            log.warning("%s not installed, notification not shown", self.command)
            return False
        except asyncio.TimeoutError:
            log.warning("%s timed out", self.command)
            return False
        except OSError as e:
            log.warning("Could not run %s: %s", self.command, e)
            return False
        if proc.returncode != 0:
            log.warning("%s failed (rc=%d): %s", self.command, proc.returncode,
                        stderr.decode(errors="replace").strip())
            return False
        return True
