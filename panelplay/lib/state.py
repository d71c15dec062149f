# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Value types shared by sessions, the reconciler and the services.

PlaybackState is immutable and always replaced as a whole, so any observer
holding a reference sees a consistent snapshot.
"""

from dataclasses import dataclass, replace
from enum import Enum

UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_TITLE = "Unknown Title"
NO_TRACK = "No Track Playing"


class Status(str, Enum):
    """Playback status, spelled the way MPRIS spells PlaybackStatus."""

    STOPPED = "Stopped"
    PLAYING = "Playing"
    PAUSED = "Paused"

    @classmethod
    def parse(cls, value) -> "Status | None":
        """Return the Status for an MPRIS string, or None if unrecognised."""
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class PlaybackState:
    status: Status = Status.STOPPED
    track_id: str | None = None
    artist: str | None = None
    title: str | None = None

    def __post_init__(self):
        if (self.track_id is not None) == (self.status is Status.STOPPED):
            raise ValueError(
                f"track_id must be set iff status is not Stopped "
                f"(status={self.status.value}, track_id={self.track_id!r})")

    @classmethod
    def stopped(cls) -> "PlaybackState":
        return cls()

    def with_changes(self, **fields) -> "PlaybackState":
        return replace(self, **fields)

    @property
    def display_artist(self) -> str:
        return self.artist if self.artist and self.artist.strip() else UNKNOWN_ARTIST

    @property
    def display_title(self) -> str:
        return self.title if self.title and self.title.strip() else UNKNOWN_TITLE

    @property
    def label(self) -> str:
        """Panel label text: ``Artist - Title`` or the idle placeholder."""
        if self.status is Status.STOPPED:
            return NO_TRACK
        return f"{self.display_artist} - {self.display_title}"

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "track_id": self.track_id,
            "artist": self.artist,
            "title": self.title,
            "label": self.label,
        }


@dataclass(frozen=True)
class Target:
    """Something playable.  ``id`` stays stable when name or uri are edited."""

    id: str
    name: str
    uri: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "url": self.uri}


class PlayerHandle:
    """A live subprocess or a remote bus identity, owned by one session.

    ``ref`` is the asyncio Process for local players and the unique bus name
    for remote ones.  Once invalidated a handle never becomes valid again;
    delayed results check ``valid`` before touching shared state.
    """

    def __init__(self, kind: str, ref):
        self.kind = kind
        self.ref = ref
        self.valid = True

    def invalidate(self):
        self.valid = False

    def __repr__(self):
        return f"<PlayerHandle {self.kind} {self.ref!r} valid={self.valid}>"
