"""Error taxonomy.

Timeline errors are recoverable: the store rejects the operation and keeps
its previous state. Export errors abort the running export after cleanup.
"""

from __future__ import annotations


class ClipforgeError(Exception):
    pass


class ProbeError(ClipforgeError):
    """Source metadata is unavailable, so the source cannot be placed."""


class TimelineError(ClipforgeError):
    pass


class ClipNotFoundError(TimelineError, KeyError):
    def __str__(self) -> str:  # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class OverlapError(TimelineError):
    pass


class InvalidTrimError(TimelineError):
    pass


class NotWithinClipError(TimelineError):
    pass


class ExportError(ClipforgeError):
    pass


class EncodeError(ExportError):
    pass


class ConcatError(ExportError):
    pass


class IOFailure(ExportError):
    pass


class ExportCancelled(ExportError):
    pass


__all__ = [
    "ClipforgeError",
    "ProbeError",
    "TimelineError",
    "ClipNotFoundError",
    "OverlapError",
    "InvalidTrimError",
    "NotWithinClipError",
    "ExportError",
    "EncodeError",
    "ConcatError",
    "IOFailure",
    "ExportCancelled",
]
