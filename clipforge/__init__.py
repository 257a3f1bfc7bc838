"""Top-level package exports.

Public API surface (keep minimal):
 - MediaRegistry (import/probe sources)
 - TimelineStore (place, move, trim, split, delete and time queries)
 - TimelinePlaybackController (Qt playback over sources and the timeline)
 - ExportSettings, run_export, export_timeline (render track 0 to a file)

The Qt-free model lives in `clipforge.core`; import from there when Qt is
not wanted.
"""

from .core.errors import (  # noqa: F401
    ClipforgeError,
    InvalidTrimError,
    NotWithinClipError,
    OverlapError,
    ProbeError,
)
from .core.models import MIN_CLIP_DURATION, PlacedClip, SourceMedia  # noqa: F401
from .core.timeline import TimelineStore  # noqa: F401
from .media.playback import TimelinePlaybackController  # noqa: F401
from .media.registry import MediaRegistry  # noqa: F401
from .services.export import ExportSettings, export_timeline, run_export  # noqa: F401

__all__ = [
    "ClipforgeError",
    "InvalidTrimError",
    "NotWithinClipError",
    "OverlapError",
    "ProbeError",
    "MIN_CLIP_DURATION",
    "PlacedClip",
    "SourceMedia",
    "TimelineStore",
    "TimelinePlaybackController",
    "MediaRegistry",
    "ExportSettings",
    "export_timeline",
    "run_export",
]
