# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Error taxonomy for talking to external players.

Transports raise these; PlayerSession catches them at its boundary and turns
them into events, log lines or one-shot user notifications.  Nothing here is
meant to escape past a session.

    PlayerError
      ├── PlayerConnectionError   player unreachable (socket refused, bus down)
      ├── PlayerTimeout           no reply within the transport timeout
      ├── ProtocolError           reply could not be decoded
      └── PlayerNotFound          player binary or bus name absent
"""


class PlayerError(Exception):
    """Base class.  ``reason`` is the short tag used in session_failed events."""

    reason = "error"


class PlayerConnectionError(PlayerError):
    reason = "connection"


class PlayerTimeout(PlayerError):
    reason = "timeout"


class ProtocolError(PlayerError):
    reason = "protocol"


class PlayerNotFound(PlayerError):
    reason = "not_found"
