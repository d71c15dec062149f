# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Transport abstraction between a PlayerSession and an external player.

Two variants share one contract:

    reply = await transport.send(request)          # may return BUSY
    token = await transport.subscribe_notifications(predicate, handler)
    await transport.unsubscribe(token)

SocketTransport (this module) speaks mpv's JSON IPC over a Unix socket, one
connection per request.  BusTransport (bus.py) speaks MPRIS over D-Bus.

Usage:
    transport = SocketTransport("/tmp/panelplay-mpv.sock")
    reply = await transport.send(encode_command("get_property", "pause"))
    if reply is BUSY:
        ...  # another command is still in flight, drop this one
"""

import asyncio
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod

from .config import cfg
from .errors import PlayerConnectionError, PlayerTimeout, ProtocolError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 2.0
DEFAULT_OBSERVED = ("pause", "media-title")


class _Busy:
    """Synthetic result of a send() rejected by mutual exclusion."""

    def __repr__(self):
        return "BUSY"

    def __bool__(self):
        return False


BUSY = _Busy()


class SubscriptionToken:
    """Opaque handle for a standing subscription.  Released exactly once."""

    _ids = itertools.count(1)

    def __init__(self, kind: str, release=None):
        self.id = next(self._ids)
        self.kind = kind
        self.active = True
        self._release = release

    def on_release(self, callback):
        self._release = callback

    def release(self) -> bool:
        """Run the release callback.  Returns False if already released."""
        if not self.active:
            log.warning("Subscription %s #%d released twice", self.kind, self.id)
            return False
        self.active = False
        if self._release:
            self._release()
            self._release = None
        return True

    def __repr__(self):
        state = "active" if self.active else "released"
        return f"<SubscriptionToken {self.kind} #{self.id} {state}>"


class PendingCommand:
    """The single in-flight request of a request/response transport."""

    def __init__(self, request):
        self.request = request
        self.started = time.monotonic()

    @property
    def age(self) -> float:
        return time.monotonic() - self.started


def encode_command(verb: str, *args) -> dict:
    """Build an mpv IPC request: ``{"command": [verb, *args]}``."""
    return {"command": [verb, *args]}


def encode_line(request: dict) -> bytes:
    return json.dumps(request).encode() + b"\n"


def decode_line(line: bytes) -> dict:
    """Decode one reply line.  Anything but a JSON object is a ProtocolError."""
    if not line:
        raise ProtocolError("connection closed before a reply arrived")
    try:
        msg = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"unparsable reply: {line[:80]!r}") from e
    if not isinstance(msg, dict):
        raise ProtocolError(f"unexpected reply: {msg!r}")
    return msg


class Transport(ABC):
    """Contract every player transport implements."""

    @abstractmethod
    async def send(self, request): ...

    @abstractmethod
    async def subscribe_notifications(self, predicate, handler) -> SubscriptionToken: ...

    async def unsubscribe(self, token: SubscriptionToken) -> None:
        token.release()

    async def close(self) -> None:
        """Release transport-wide resources.  Optional."""


class SocketTransport(Transport):
    """mpv JSON IPC over a Unix domain socket.

    Every send() opens a fresh connection, writes one line, reads one reply
    line and closes, so a player that died never leaves a half-open socket
    behind.  At most one send() is on the wire at a time; the rest get BUSY.
    """

    def __init__(self, path: str, timeout: float | None = None,
                 observe=DEFAULT_OBSERVED):
        self.path = path
        self.timeout = float(timeout if timeout is not None
                             else cfg("transport", "timeout", default=DEFAULT_TIMEOUT))
        self.observe = tuple(observe)
        self._pending: PendingCommand | None = None

    @property
    def busy(self) -> bool:
        return self._pending is not None

    async def send(self, request: dict):
        """Send one command and return the decoded reply (or BUSY)."""
        if self._pending is not None:
            log.debug("Dropping %s, command %s still pending (%.2fs)",
                      request.get("command"), self._pending.request.get("command"),
                      self._pending.age)
            return BUSY

        self._pending = PendingCommand(request)
        try:
            return await asyncio.wait_for(self._exchange(request), self.timeout)
        except asyncio.TimeoutError:
            raise PlayerTimeout(
                f"no reply to {request.get('command')} within {self.timeout:.1f}s") from None
        finally:
            self._pending = None

    async def _open(self):
        try:
            return await asyncio.open_unix_connection(self.path)
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise PlayerConnectionError(f"player socket {self.path} not reachable: {e}") from e
        except OSError as e:
            raise PlayerConnectionError(f"player socket {self.path} error: {e}") from e

    async def _exchange(self, request: dict) -> dict:
        reader, writer = await self._open()
        try:
            writer.write(encode_line(request))
            await writer.drain()
            while True:
                msg = decode_line(await _readline(reader))
                # mpv pushes events to every client; they are not our reply
                if "event" in msg and "error" not in msg:
                    continue
                log.debug("mpv %s -> %s", request.get("command"), msg)
                return msg
        except (ConnectionResetError, BrokenPipeError) as e:
            raise PlayerConnectionError(f"player socket closed: {e}") from e
        finally:
            await _close_writer(writer)

    async def ping(self) -> bool:
        """True if the socket accepts a connection right now."""
        try:
            _, writer = await asyncio.wait_for(self._open(), self.timeout)
        except (PlayerConnectionError, asyncio.TimeoutError):
            return False
        await _close_writer(writer)
        return True

    # ── Notifications ──

    async def subscribe_notifications(self, predicate, handler,
                                      on_close=None) -> SubscriptionToken:
        """Open an observer connection and forward property changes.

        ``predicate(event)`` sees the raw mpv event dict; accepted events
        reach ``handler({name: data})``.  ``on_close()`` runs if the player
        drops the connection (it exited), but not after unsubscribe().
        """
        try:
            reader, writer = await asyncio.wait_for(self._open(), self.timeout)
        except asyncio.TimeoutError:
            raise PlayerTimeout(f"could not open observer on {self.path}") from None

        try:
            for observe_id, name in enumerate(self.observe, 1):
                writer.write(encode_line(encode_command("observe_property", observe_id, name)))
            await writer.drain()
        except OSError as e:
            await _close_writer(writer)
            raise PlayerConnectionError(f"observer setup failed: {e}") from e

        task = asyncio.create_task(
            self._read_events(reader, writer, predicate, handler, on_close))
        log.debug("Observing %s on %s", ", ".join(self.observe), self.path)
        return SubscriptionToken("mpv-observer", release=task.cancel)

    async def _read_events(self, reader, writer, predicate, handler, on_close):
        """Background task: read observer events until EOF or cancellation."""
        try:
            while True:
                try:
                    line = await _readline(reader)
                except ProtocolError as e:
                    log.debug("Ignoring observer line: %s", e)
                    continue
                if not line:
                    break  # EOF, mpv closed
                try:
                    msg = decode_line(line)
                except ProtocolError as e:
                    log.debug("Ignoring observer line: %s", e)
                    continue
                if msg.get("event") != "property-change" or not predicate(msg):
                    continue
                try:
                    handler({msg.get("name"): msg.get("data")})
                except Exception as e:
                    log.error("Notification handler error: %s", e)
        except asyncio.CancelledError:
            await _close_writer(writer)
            return
        except OSError as e:
            log.debug("Observer connection ended: %s", e)

        await _close_writer(writer)
        if on_close:
            on_close()


async def _readline(reader) -> bytes:
    try:
        return await reader.readline()
    except ValueError as e:
        # StreamReader turns a line over its limit into ValueError
        raise ProtocolError(f"reply line too long: {e}") from e


async def _close_writer(writer):
    try:
        writer.close()
        await writer.wait_closed()
    except (OSError, RuntimeError) as e:
        log.debug("Closing IPC connection: %s", e)
