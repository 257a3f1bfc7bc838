"""Timeline value types.

`SourceMedia` describes an imported file and is owned by the media registry.
`PlacedClip` is an instance of a source on a track; only `TimelineStore`
creates or replaces them. Both are frozen so a reference handed out by the
store can never be used to bypass its invariants.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

MIN_CLIP_DURATION = 0.1  # seconds
PLAYBACK_TRACK = 0  # only this track is played back / exported
EPSILON = 1e-9


@dataclass(frozen=True)
class SourceMedia:
    id: str
    path: str
    duration: float  # seconds
    width: int = 0
    height: int = 0
    has_audio: bool = True

    @property
    def name(self) -> str:
        return Path(self.path).name


@dataclass(frozen=True)
class PlacedClip:
    id: int
    source_id: str
    track: int
    start_time: float
    trim_start: float
    trim_end: float

    @property
    def duration(self) -> float:
        return self.trim_end - self.trim_start

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def contains(self, t: float) -> bool:
        """Half-open span test: [start_time, end_time)."""
        return self.start_time <= t < self.end_time

    def source_time_at(self, composition_time: float) -> float:
        return self.trim_start + (composition_time - self.start_time)


@dataclass(frozen=True)
class ExportClip:
    """By-value copy of a placed clip plus the source facts the encoder needs."""

    clip_id: int
    source_path: str
    track: int
    start_time: float
    trim_start: float
    trim_end: float
    width: int = 0
    height: int = 0
    has_audio: bool = True

    @property
    def duration(self) -> float:
        return self.trim_end - self.trim_start


__all__ = [
    "MIN_CLIP_DURATION",
    "PLAYBACK_TRACK",
    "EPSILON",
    "SourceMedia",
    "PlacedClip",
    "ExportClip",
]
