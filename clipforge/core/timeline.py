"""Timeline store: the single owner of placed clips.

Clips live in an id-keyed arena. Every mutator builds the candidate clip(s),
checks all invariants against the rest of the track, and only then commits,
so a rejected operation leaves the store exactly as it was. Callers receive
frozen `PlacedClip` values and refer back to clips by integer id.

`media` is anything with ``get(source_id) -> SourceMedia`` that raises
`ProbeError` for unknown sources (normally a `MediaRegistry`).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from ..utils.timefmt import format_time
from .errors import (
    ClipNotFoundError,
    InvalidTrimError,
    NotWithinClipError,
    OverlapError,
)
from .models import (
    EPSILON,
    MIN_CLIP_DURATION,
    PLAYBACK_TRACK,
    ExportClip,
    PlacedClip,
    SourceMedia,
)
from .snapping import Span, end_of_track, fits, resolve_snap

logger = logging.getLogger(__name__)

TRIM_START = "start"
TRIM_END = "end"


class TimelineStore:
    def __init__(self, media, *, snap_tolerance: Optional[float] = None):
        self._media = media
        self._clips: Dict[int, PlacedClip] = {}
        self._next_id = 1
        self.snap_tolerance = snap_tolerance

    # --- Queries ---
    def get(self, clip_id: int) -> PlacedClip:
        try:
            return self._clips[clip_id]
        except KeyError:
            raise ClipNotFoundError(f"no placed clip with id {clip_id}") from None

    def __contains__(self, clip_id: int) -> bool:
        return clip_id in self._clips

    def __len__(self) -> int:
        return len(self._clips)

    def clips(self, track: Optional[int] = None) -> List[PlacedClip]:
        """Clips sorted by (track, start_time), optionally for one track."""
        items = [
            c for c in self._clips.values() if track is None or c.track == track
        ]
        items.sort(key=lambda c: (c.track, c.start_time))
        return items

    def tracks(self) -> List[int]:
        return sorted({c.track for c in self._clips.values()})

    def clip_at_time(self, composition_time: float) -> Optional[PlacedClip]:
        """Clip on the playback track whose half-open span holds the time."""
        for clip in self.clips(PLAYBACK_TRACK):
            if clip.contains(composition_time):
                return clip
        return None

    def next_clip_after(self, composition_time: float) -> Optional[PlacedClip]:
        for clip in self.clips(PLAYBACK_TRACK):
            if clip.start_time > composition_time:
                return clip
        return None

    def total_duration(self) -> float:
        return max((c.end_time for c in self.clips(PLAYBACK_TRACK)), default=0.0)

    def source(self, source_id: str) -> SourceMedia:
        return self._media.get(source_id)

    def snapshot(self) -> Tuple[ExportClip, ...]:
        """By-value copy of the playback track for export."""
        out = []
        for clip in self.clips(PLAYBACK_TRACK):
            media = self._media.get(clip.source_id)
            out.append(
                ExportClip(
                    clip_id=clip.id,
                    source_path=media.path,
                    track=clip.track,
                    start_time=clip.start_time,
                    trim_start=clip.trim_start,
                    trim_end=clip.trim_end,
                    width=media.width,
                    height=media.height,
                    has_audio=media.has_audio,
                )
            )
        return tuple(out)

    # --- Mutators ---
    def place(self, source_id: str, track: int, desired_start: float) -> PlacedClip:
        """Place the full source on ``track``.

        When ``desired_start`` collides with an existing clip the new clip is
        appended after the last clip on the track instead.
        """
        media = self._media.get(source_id)
        if media.duration < MIN_CLIP_DURATION:
            raise InvalidTrimError(
                f"source {media.name} is shorter than {MIN_CLIP_DURATION}s"
            )
        others = self._spans(track)
        start = max(0.0, float(desired_start))
        if not fits(start, media.duration, others):
            start = end_of_track(others)
        clip = PlacedClip(
            id=self._allocate_id(),
            source_id=source_id,
            track=track,
            start_time=start,
            trim_start=0.0,
            trim_end=media.duration,
        )
        self._commit(clip)
        logger.debug("placed clip %s on track %s at %s", clip.id, track, format_time(start))
        return clip

    def move(self, clip_id: int, proposed_start: float) -> float:
        """Hard-snap ``clip_id`` toward ``proposed_start`` on its own track.

        Returns the committed start time, which is the old one when no legal
        snap point qualifies.
        """
        clip = self.get(clip_id)
        others = self._spans(clip.track, exclude=clip_id)
        target = resolve_snap(
            clip.duration, float(proposed_start), others, self.snap_tolerance
        )
        if target is None:
            return clip.start_time
        self._commit(replace(clip, start_time=target))
        return target

    def trim(self, clip_id: int, side: str, proposed_boundary: float) -> float:
        """Move one trim boundary, keeping the opposite edge fixed on the timeline.

        ``side`` is ``"start"`` or ``"end"``. Returns the new trim_start or
        trim_end.
        """
        clip = self.get(clip_id)
        media = self._media.get(clip.source_id)
        value = min(max(float(proposed_boundary), 0.0), media.duration)
        if side == TRIM_START:
            # a start trim shifts start_time, which must stay >= 0
            value = max(value, clip.trim_start - clip.start_time)
            candidate = replace(
                clip,
                trim_start=value,
                start_time=clip.start_time + (value - clip.trim_start),
            )
        elif side == TRIM_END:
            candidate = replace(clip, trim_end=value)
        else:
            raise ValueError(f"unknown trim side: {side!r}")
        if candidate.duration < MIN_CLIP_DURATION - EPSILON:
            raise InvalidTrimError(
                f"trim would leave clip {clip_id} shorter than {MIN_CLIP_DURATION}s"
            )
        if not fits(
            candidate.start_time,
            candidate.duration,
            self._spans(clip.track, exclude=clip_id),
        ):
            raise OverlapError(
                f"trimming clip {clip_id} to {format_time(value)} overlaps a neighbour"
            )
        self._commit(candidate)
        return value

    def split(self, clip_id: int, at_time: float) -> Tuple[PlacedClip, PlacedClip]:
        clip = self.get(clip_id)
        if not (clip.start_time < at_time < clip.end_time):
            raise NotWithinClipError(
                f"{format_time(at_time)} is not inside clip {clip_id} "
                f"({format_time(clip.start_time)} to {format_time(clip.end_time)})"
            )
        cut = clip.trim_start + (at_time - clip.start_time)
        first = replace(clip, trim_end=cut)
        second = PlacedClip(
            id=self._next_id,
            source_id=clip.source_id,
            track=clip.track,
            start_time=at_time,
            trim_start=cut,
            trim_end=clip.trim_end,
        )
        if min(first.duration, second.duration) < MIN_CLIP_DURATION - EPSILON:
            raise InvalidTrimError(
                f"splitting at {format_time(at_time)} leaves a piece shorter "
                f"than {MIN_CLIP_DURATION}s"
            )
        self._allocate_id()
        self._clips[first.id] = first
        self._clips[second.id] = second
        return first, second

    def delete(self, clip_id: int) -> PlacedClip:
        """Remove a clip. The gap it leaves stays open."""
        clip = self.get(clip_id)
        del self._clips[clip_id]
        return clip

    def clear(self) -> None:
        self._clips.clear()

    # --- Internal ---
    def _allocate_id(self) -> int:
        clip_id = self._next_id
        self._next_id += 1
        return clip_id

    def _spans(self, track: int, exclude: Optional[int] = None) -> List[Span]:
        return [
            (c.start_time, c.end_time)
            for c in self._clips.values()
            if c.track == track and c.id != exclude
        ]

    def _commit(self, clip: PlacedClip) -> None:
        if not fits(clip.start_time, clip.duration, self._spans(clip.track, clip.id)):
            raise OverlapError(
                f"clip {clip.id} at {format_time(clip.start_time)} overlaps track {clip.track}"
            )
        self._clips[clip.id] = clip


__all__ = ["TimelineStore", "TRIM_START", "TRIM_END"]
