"""Registry of imported source media.

Probing goes through MoviePy (which drives the ffmpeg bundled by
imageio-ffmpeg). The registry is read by the timeline store but the store
never changes it.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Dict, List

from moviepy import VideoFileClip

from ..core.errors import ProbeError
from ..core.models import SourceMedia

logger = logging.getLogger(__name__)


def probe(path: str | Path) -> dict:
    """Return ``{duration, width, height, has_audio}`` for a media file."""
    p = Path(path)
    if not p.exists():
        raise ProbeError(f"source not found: {p}")
    try:
        clip = VideoFileClip(str(p))
    except Exception as e:
        raise ProbeError(f"cannot read {p.name}: {e}") from e
    try:
        width, height = clip.size
        info = {
            "duration": float(clip.duration or 0.0),
            "width": int(width),
            "height": int(height),
            "has_audio": clip.audio is not None,
        }
    finally:
        clip.close()
    if info["duration"] <= 0:
        raise ProbeError(f"{p.name} reports no duration")
    return info


class MediaRegistry:
    def __init__(self):
        self._sources: Dict[str, SourceMedia] = {}

    def import_file(self, path: str | Path) -> SourceMedia:
        """Probe ``path`` and register it as a new source."""
        info = probe(path)
        media = SourceMedia(id=self._new_id(), path=str(Path(path)), **info)
        self._sources[media.id] = media
        logger.info(
            "imported %s (%.3fs, %dx%d)", media.name, media.duration, media.width, media.height
        )
        return media

    def add(self, media: SourceMedia) -> SourceMedia:
        """Register media whose metadata is already known."""
        if media.id in self._sources:
            raise ValueError(f"duplicate source id: {media.id}")
        self._sources[media.id] = media
        return media

    def get(self, source_id: str) -> SourceMedia:
        try:
            return self._sources[source_id]
        except KeyError:
            raise ProbeError(f"unknown source id: {source_id}") from None

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources

    def all(self) -> List[SourceMedia]:
        return list(self._sources.values())

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex[:12]


__all__ = ["MediaRegistry", "probe"]
