# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
BusTransport: MPRIS over the D-Bus session bus (dbus-fast).

Same contract as SocketTransport, but a request is a BusCall (a method call
on the player's object path) and notifications are PropertiesChanged signals.

Usage:
    transport = BusTransport("org.mpris.MediaPlayer2.spotify")
    await transport.connect()
    status = await transport.get_property(PLAYER_IFACE, "PlaybackStatus")
    token = await transport.watch_name(on_appear, on_vanish)
"""

import asyncio
import logging
from dataclasses import dataclass, field

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus

from .config import cfg
from .errors import PlayerConnectionError, PlayerNotFound, PlayerTimeout, ProtocolError
from .transport import SubscriptionToken, Transport

log = logging.getLogger(__name__)

MPRIS_PATH = "/org/mpris/MediaPlayer2"
PLAYER_IFACE = "org.mpris.MediaPlayer2.Player"
PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"

DBUS_NAME = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"

_NOT_FOUND_ERRORS = (
    "org.freedesktop.DBus.Error.ServiceUnknown",
    "org.freedesktop.DBus.Error.NameHasNoOwner",
    "org.freedesktop.DBus.Error.UnknownObject",
)
_TIMEOUT_ERRORS = (
    "org.freedesktop.DBus.Error.NoReply",
    "org.freedesktop.DBus.Error.Timeout",
    "org.freedesktop.DBus.Error.TimedOut",
)


@dataclass
class BusCall:
    """One method call on the watched player object."""

    interface: str
    member: str
    signature: str = ""
    body: list = field(default_factory=list)


def unpack(value):
    """Recursively strip dbus Variants down to plain Python values."""
    if isinstance(value, Variant):
        return unpack(value.value)
    if isinstance(value, dict):
        return {k: unpack(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unpack(v) for v in value]
    return value


def map_error(error_name: str, text: str):
    """Translate a D-Bus error reply into the player error taxonomy."""
    if error_name in _NOT_FOUND_ERRORS:
        return PlayerNotFound(text)
    if error_name in _TIMEOUT_ERRORS:
        return PlayerTimeout(text)
    return ProtocolError(text)


class BusTransport(Transport):
    def __init__(self, bus_name: str, object_path: str = MPRIS_PATH,
                 bus: MessageBus | None = None, timeout: float | None = None):
        self.bus_name = bus_name
        self.object_path = object_path
        self.timeout = float(timeout if timeout is not None
                             else cfg("transport", "timeout", default=2.0))
        self._bus = bus
        self._owns_bus = bus is None

    @property
    def connected(self) -> bool:
        return self._bus is not None and getattr(self._bus, "connected", True)

    async def connect(self) -> MessageBus:
        if self._bus is None:
            try:
                self._bus = await MessageBus(bus_type=BusType.SESSION).connect()
            except Exception as e:
                raise PlayerConnectionError(f"session bus unavailable: {e}") from e
            log.info("Connected to session bus as %s", self._bus.unique_name)
        return self._bus

    async def close(self):
        if self._bus is not None and self._owns_bus:
            self._bus.disconnect()
        self._bus = None

    # ── Calls ──

    async def _call(self, message: Message):
        if self._bus is None:
            raise PlayerConnectionError("not connected to the session bus")
        label = f"{message.interface}.{message.member}"
        try:
            reply = await asyncio.wait_for(self._bus.call(message), self.timeout)
        except asyncio.TimeoutError:
            raise PlayerTimeout(f"no reply to {label} within {self.timeout:.1f}s") from None
        except (EOFError, ConnectionError) as e:
            raise PlayerConnectionError(f"bus connection lost during {label}: {e}") from e
        if reply is None:
            raise ProtocolError(f"no reply message for {label}")
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body else reply.error_name
            raise map_error(reply.error_name, f"{label}: {text}")
        return reply

    async def send(self, request: BusCall):
        """Call a method on the player and return the unpacked reply body."""
        reply = await self._call(Message(
            destination=self.bus_name,
            path=self.object_path,
            interface=request.interface,
            member=request.member,
            signature=request.signature,
            body=list(request.body),
        ))
        return unpack(reply.body)

    async def call_method(self, interface: str, member: str):
        return await self.send(BusCall(interface, member))

    async def get_property(self, interface: str, name: str):
        body = await self.send(BusCall(PROPERTIES_IFACE, "Get", "ss", [interface, name]))
        if not body:
            raise ProtocolError(f"empty reply for property {name}")
        return body[0]

    async def set_property(self, interface: str, name: str, value: Variant):
        await self.send(BusCall(PROPERTIES_IFACE, "Set", "ssv", [interface, name, value]))

    async def _bus_method(self, member: str, signature: str = "", body=None):
        reply = await self._call(Message(
            destination=DBUS_NAME,
            path=DBUS_PATH,
            interface=DBUS_NAME,
            member=member,
            signature=signature,
            body=body or [],
        ))
        return reply.body

    async def name_owner(self) -> str | None:
        """Unique name currently owning ``bus_name``, or None."""
        try:
            body = await self._bus_method("GetNameOwner", "s", [self.bus_name])
        except PlayerNotFound:
            return None
        return body[0] if body else None

    # ── Signals ──

    async def _add_match(self, rule: str, handler) -> SubscriptionToken:
        await self.connect()
        await self._bus_method("AddMatch", "s", [rule])
        self._bus.add_message_handler(handler)
        bus = self._bus

        def release():
            bus.remove_message_handler(handler)
            asyncio.ensure_future(self._remove_match(rule))

        return SubscriptionToken("dbus-match", release=release)

    async def _remove_match(self, rule: str):
        try:
            await self._bus_method("RemoveMatch", "s", [rule])
        except (PlayerConnectionError, PlayerTimeout, ProtocolError, PlayerNotFound) as e:
            log.debug("RemoveMatch %s failed: %s", rule, e)

    async def subscribe_notifications(self, predicate, handler) -> SubscriptionToken:
        """Forward PropertiesChanged from the player object.

        ``predicate(interface_name)`` selects interfaces; ``handler(changed)``
        gets the changed properties as plain Python values.  Signals from any
        sender but the current owner of ``bus_name`` are ignored.
        """
        owner = await self.name_owner()
        if owner is None:
            raise PlayerNotFound(f"{self.bus_name} is not on the bus")
        rule = (f"type='signal',sender='{self.bus_name}',path='{self.object_path}',"
                f"interface='{PROPERTIES_IFACE}',member='PropertiesChanged'")

        def on_message(msg):
            if (msg.message_type != MessageType.SIGNAL
                    or msg.member != "PropertiesChanged"
                    or msg.interface != PROPERTIES_IFACE
                    or msg.path != self.object_path
                    or msg.sender != owner):
                return None
            if len(msg.body) < 2 or not predicate(msg.body[0]):
                return None
            try:
                handler(unpack(msg.body[1]))
            except Exception as e:
                log.error("PropertiesChanged handler error: %s", e)
            return None

        token = await self._add_match(rule, on_message)
        log.debug("Subscribed to PropertiesChanged from %s (%s)", self.bus_name, owner)
        return token

    async def watch_name(self, on_appear, on_vanish) -> SubscriptionToken:
        """Track presence of ``bus_name``.

        ``on_appear(owner)`` fires for the initial owner (if any) and every
        time the name is acquired; ``on_vanish()`` when it is released.
        """
        rule = (f"type='signal',sender='{DBUS_NAME}',interface='{DBUS_NAME}',"
                f"member='NameOwnerChanged',arg0='{self.bus_name}'")

        def on_message(msg):
            if (msg.message_type != MessageType.SIGNAL
                    or msg.member != "NameOwnerChanged"
                    or msg.interface != DBUS_NAME
                    or not msg.body or msg.body[0] != self.bus_name):
                return None
            _, old_owner, new_owner = msg.body
            try:
                if old_owner and not new_owner:
                    log.info("%s vanished", self.bus_name)
                    on_vanish()
                elif new_owner:
                    log.info("%s appeared (%s)", self.bus_name, new_owner)
                    on_appear(new_owner)
            except Exception as e:
                log.error("Name watch handler error: %s", e)
            return None

        token = await self._add_match(rule, on_message)
        owner = await self.name_owner()
        if owner:
            log.info("%s already present (%s)", self.bus_name, owner)
            on_appear(owner)
        return token
