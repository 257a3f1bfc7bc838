"""Mutex-guarded MoviePy reader for preview frames.

The playback controller swaps adapters whenever the active source changes,
so each adapter owns exactly one open `VideoFileClip` and closes it on
release.
"""

from __future__ import annotations

from moviepy import VideoFileClip
from PySide6.QtCore import QMutex


class ClipAdapter:
    def __init__(self, clip, path: str = ""):
        self._clip = clip
        self._path = path
        self._mutex = QMutex()

    @property
    def path(self) -> str:
        return self._path

    @property
    def duration(self) -> float:
        return float(getattr(self._clip, "duration", 0.0) or 0.0)

    @property
    def fps(self) -> float:
        return float(getattr(self._clip, "fps", 0.0) or 0.0)

    def get_frame(self, t: float):
        """Frame at source time ``t``, clamped just inside the clip."""
        last = max(0.0, self.duration - 1.0 / (self.fps or 24.0))
        t = min(max(0.0, t), last)
        self._mutex.lock()
        try:
            return self._clip.get_frame(t)
        finally:
            self._mutex.unlock()

    def close(self) -> None:
        self._mutex.lock()
        try:
            close = getattr(self._clip, "close", None)
            if close is not None:
                close()
        finally:
            self._mutex.unlock()

    @classmethod
    def from_path(cls, path: str) -> "ClipAdapter":
        return cls(VideoFileClip(path), path)


__all__ = ["ClipAdapter"]
