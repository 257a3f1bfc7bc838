"""Playback cursor state machine.

Three cursor variants exist: `Idle` (nothing loaded), `MediaCursor`
(previewing one source directly) and `TimelineCursor` (playing the
composition on the playback track). Every transition is a pure function
returning a `Transition`: the next cursor plus the side effects the player
has to perform. Only a change of active clip produces `LoadSource`, so
scrubbing inside one clip never reloads media.

Each function dispatches over all three variants and raises `TypeError`
for anything else.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import List, NamedTuple, Optional, Union

from .models import EPSILON
from .timeline import TimelineStore


class PlaybackMode(enum.Enum):
    IDLE = "idle"
    MEDIA = "media"
    TIMELINE = "timeline"


@dataclass(frozen=True)
class Idle:
    mode = PlaybackMode.IDLE
    playing = False


@dataclass(frozen=True)
class MediaCursor:
    source_id: str
    source_time: float = 0.0
    playing: bool = False
    mode = PlaybackMode.MEDIA


@dataclass(frozen=True)
class TimelineCursor:
    composition_time: float = 0.0
    active_clip_id: Optional[int] = None
    playing: bool = False
    mode = PlaybackMode.TIMELINE


Cursor = Union[Idle, MediaCursor, TimelineCursor]


@dataclass(frozen=True)
class LoadSource:
    source_id: str
    path: str
    source_time: float


@dataclass(frozen=True)
class SeekSource:
    source_time: float


@dataclass(frozen=True)
class ClearFrame:
    pass


Effect = Union[LoadSource, SeekSource, ClearFrame]


class Transition(NamedTuple):
    cursor: Cursor
    effects: List[Effect]


def _unexpected(cursor) -> TypeError:
    return TypeError(f"unknown playback cursor: {cursor!r}")


# --- Media mode ---
def select_source(cursor: Cursor, store: TimelineStore, source_id: str) -> Transition:
    """Preview one source from its start, leaving timeline mode if needed."""
    media = store.source(source_id)
    nxt = MediaCursor(source_id=source_id)
    if isinstance(cursor, MediaCursor) and cursor.source_id == source_id:
        return Transition(nxt, [SeekSource(0.0)])
    if isinstance(cursor, (Idle, MediaCursor, TimelineCursor)):
        return Transition(nxt, [LoadSource(source_id, media.path, 0.0)])
    raise _unexpected(cursor)


# --- Timeline mode ---
def _locate(
    cursor: Cursor, store: TimelineStore, t: float, playing: bool
) -> Transition:
    """Resolve the clip owning composition time ``t`` and the effects to show it."""
    if isinstance(cursor, TimelineCursor):
        previous = cursor.active_clip_id
    elif isinstance(cursor, (Idle, MediaCursor)):
        previous = None
    else:
        raise _unexpected(cursor)
    clip = store.clip_at_time(t)
    if clip is None:
        effects: List[Effect] = []
        if previous is not None or not isinstance(cursor, TimelineCursor):
            effects.append(ClearFrame())
        return Transition(TimelineCursor(t, None, playing), effects)
    source_time = clip.source_time_at(t)
    nxt = TimelineCursor(t, clip.id, playing)
    if previous == clip.id:
        return Transition(nxt, [SeekSource(source_time)])
    media = store.source(clip.source_id)
    return Transition(nxt, [LoadSource(clip.source_id, media.path, source_time)])


def select_placed_clip(cursor: Cursor, store: TimelineStore, clip_id: int) -> Transition:
    clip = store.get(clip_id)
    return _locate(cursor, store, clip.start_time, playing=False)


def seek(cursor: Cursor, store: TimelineStore, composition_time: float) -> Transition:
    """Ruler click or scrub. Keeps playing if the timeline was playing."""
    t = min(max(0.0, composition_time), store.total_duration())
    playing = isinstance(cursor, TimelineCursor) and cursor.playing
    return _locate(cursor, store, t, playing)


def start_timeline(
    cursor: Cursor, store: TimelineStore, at: Optional[float] = None
) -> Transition:
    total = store.total_duration()
    if at is not None:
        t = at
    elif isinstance(cursor, TimelineCursor):
        t = cursor.composition_time
    elif isinstance(cursor, (Idle, MediaCursor)):
        t = 0.0
    else:
        raise _unexpected(cursor)
    if total <= 0:
        return _locate(cursor, store, 0.0, playing=False)
    if t >= total - EPSILON:
        t = 0.0  # rewind when starting from the end
    return _locate(cursor, store, min(max(0.0, t), total), playing=True)


def advance(cursor: Cursor, store: TimelineStore, elapsed: float) -> Transition:
    """Natural playback step of ``elapsed`` seconds."""
    if isinstance(cursor, Idle):
        return Transition(cursor, [])
    if isinstance(cursor, MediaCursor):
        if not cursor.playing:
            return Transition(cursor, [])
        duration = store.source(cursor.source_id).duration
        t = cursor.source_time + elapsed
        if t >= duration:
            return Transition(replace(cursor, source_time=duration, playing=False), [])
        return Transition(replace(cursor, source_time=t), [SeekSource(t)])
    if isinstance(cursor, TimelineCursor):
        if not cursor.playing:
            return Transition(cursor, [])
        total = store.total_duration()
        t = cursor.composition_time + elapsed
        if t >= total - EPSILON or store.clip_at_time(t) is None:
            # past the end or into a gap: clamp and stop, the last frame stays up
            return Transition(TimelineCursor(total, None, False), [])
        return _locate(cursor, store, t, playing=True)
    raise _unexpected(cursor)


# --- Common ---
def play(cursor: Cursor, store: TimelineStore) -> Transition:
    if isinstance(cursor, MediaCursor):
        duration = store.source(cursor.source_id).duration
        if cursor.source_time >= duration:
            return Transition(replace(cursor, source_time=0.0, playing=True), [SeekSource(0.0)])
        return Transition(replace(cursor, playing=True), [])
    if isinstance(cursor, (Idle, TimelineCursor)):
        return start_timeline(cursor, store)
    raise _unexpected(cursor)


def pause(cursor: Cursor) -> Transition:
    if isinstance(cursor, Idle):
        return Transition(cursor, [])
    if isinstance(cursor, (MediaCursor, TimelineCursor)):
        return Transition(replace(cursor, playing=False), [])
    raise _unexpected(cursor)


def stop(cursor: Cursor) -> Transition:
    if isinstance(cursor, Idle):
        return Transition(cursor, [])
    if isinstance(cursor, (MediaCursor, TimelineCursor)):
        return Transition(Idle(), [ClearFrame()])
    raise _unexpected(cursor)


def refresh(cursor: Cursor, store: TimelineStore) -> Transition:
    """Re-resolve after the store changed (trim, split, delete under the playhead)."""
    if isinstance(cursor, (Idle, MediaCursor)):
        return Transition(cursor, [])
    if isinstance(cursor, TimelineCursor):
        # ids are never reused, so a deleted active clip always counts as a switch
        t = min(cursor.composition_time, store.total_duration())
        return _locate(cursor, store, t, cursor.playing)
    raise _unexpected(cursor)


__all__ = [
    "PlaybackMode",
    "Idle",
    "MediaCursor",
    "TimelineCursor",
    "Cursor",
    "LoadSource",
    "SeekSource",
    "ClearFrame",
    "Effect",
    "Transition",
    "select_source",
    "select_placed_clip",
    "seek",
    "start_timeline",
    "advance",
    "play",
    "pause",
    "stop",
    "refresh",
]
