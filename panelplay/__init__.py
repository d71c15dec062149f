# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""Panelplay: media control services for desktop panels."""

__version__ = "1.0.0"
