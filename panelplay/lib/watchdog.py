# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""systemd notify protocol for the player services.

READY=1 once the HTTP server is up, WATCHDOG=1 while the service reports
itself healthy, STATUS= with the panel label (so ``systemctl --user status``
shows what is playing) and STOPPING=1 on shutdown.  Without NOTIFY_SOCKET
(started from a terminal) every call is a no-op.

Usage:
    from panelplay.lib.watchdog import sd_notify, watchdog_loop
    task = asyncio.create_task(watchdog_loop(status=lambda: state.label))
    ...
    sd_notify("STOPPING=1")
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 20.0


def notify_socket() -> str | None:
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return None
    # abstract namespace
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    return addr


def sd_notify(*fields: str) -> bool:
    """Send ``fields`` (``KEY=value`` strings) as one notify datagram."""
    addr = notify_socket()
    if addr is None:
        return False
    with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
        try:
            sock.sendto("\n".join(fields).encode(), addr)
        except OSError as e:
            logger.debug("sd_notify(%s) failed: %s", ", ".join(fields), e)
            return False
    return True


def watchdog_interval(default: float = DEFAULT_INTERVAL) -> float:
    """Half of systemd's WATCHDOG_USEC, or ``default`` when it isn't set."""
    usec = os.environ.get("WATCHDOG_USEC")
    if not usec:
        return default
    try:
        return max(1.0, int(usec) / 2_000_000)
    except ValueError:
        logger.warning("Ignoring malformed WATCHDOG_USEC=%r", usec)
        return default


async def watchdog_loop(status=None, healthy=None, interval: float | None = None):
    """Ping the watchdog until cancelled.

    ``healthy()`` returning False withholds the ping so systemd restarts a
    wedged service; ``status()`` is sent as STATUS= whenever its text changes.
    """
    interval = interval or watchdog_interval()
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%.1fs)", interval)
    last_status = None
    while True:
        if healthy is None or healthy():
            fields = ["WATCHDOG=1"]
            text = status() if status else None
            if text and text != last_status:
                fields.append(f"STATUS={text}")
                last_status = text
            sd_notify(*fields)
        else:
            logger.warning("Service unhealthy, withholding watchdog ping")
        await asyncio.sleep(interval)
