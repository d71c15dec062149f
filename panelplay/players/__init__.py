# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Players: sessions that drive an external media player, and the services
that expose them to a panel UI.

A session owns the player connection (a local process or a bus identity) and
feeds the service's StateReconciler.  A service owns the sessions and the
HTTP + WebSocket surface.

Current players:
  mpv.py        mpv over its JSON IPC socket (radio streams)
  mpris.py      any MPRIS player on the session bus (Spotify by default)

Services:
  radio.py      panelplay-radio, station list + mpv session
  spotify.py    panelplay-spotify, MPRIS panel controls
"""
