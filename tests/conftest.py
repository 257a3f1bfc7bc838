"""Shared fixtures: in-memory sources, a store, real clips and a fake encoder."""

import asyncio
from pathlib import Path

import pytest
from moviepy import ColorClip
from PySide6.QtCore import QCoreApplication

from clipforge.core.errors import ConcatError, EncodeError
from clipforge.core.models import SourceMedia
from clipforge.core.timeline import TimelineStore
from clipforge.media.registry import MediaRegistry


@pytest.fixture
def registry():
    reg = MediaRegistry()
    for sid, duration in (("a", 5.0), ("b", 4.0), ("c", 3.0), ("long", 30.0)):
        reg.add(
            SourceMedia(id=sid, path=f"/media/{sid}.mp4", duration=duration, width=64, height=48)
        )
    return reg


@pytest.fixture
def store(registry):
    return TimelineStore(registry)


@pytest.fixture
def qapp():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def make_video(tmp_path):
    """Write a solid-colour mp4 with MoviePy and return its path."""

    def _make(name, duration, color=(255, 0, 0), size=(64, 48)):
        path = tmp_path / name
        clip = ColorClip(size=size, color=color, duration=duration)
        clip.write_videofile(str(path), fps=24, logger=None)
        clip.close()
        return path

    return _make


class FakeEncoder:
    """Stands in for FFmpegEncoder; writes marker files instead of video."""

    def __init__(self, fail_sources=(), fail_concat=False, delay=0.0, fail_times=0):
        self.fail_sources = set(fail_sources)
        self.fail_concat = fail_concat
        self.delay = delay
        self.fail_times = fail_times  # fail this many calls before succeeding
        self.trim_calls = []
        self.concat_manifests = []
        self.cancelled = []

    async def trim_encode(
        self, source, start, duration, dest, profile,
        *, has_audio=True, on_progress=None, cancel=None, timeout=None,
    ):
        self.trim_calls.append((source, start, duration, dest))
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled.append(source)
            raise
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EncodeError(f"transient failure for {source}")
        if source in self.fail_sources:
            raise EncodeError(f"cannot decode {source}")
        if on_progress:
            on_progress(0.5)
            on_progress(0.25)  # out-of-order report must not lower progress
            on_progress(1.0)
        Path(dest).write_bytes(b"segment")
        return dest

    async def concat(
        self, manifest, dest, expected_duration,
        *, on_progress=None, cancel=None, timeout=None,
    ):
        self.concat_manifests.append(Path(manifest).read_text())
        if self.fail_concat:
            Path(dest).write_bytes(b"partial")
            raise ConcatError("concat demuxer failed")
        if on_progress:
            on_progress(1.0)
        Path(dest).write_bytes(b"movie")
        return dest


@pytest.fixture
def fake_encoder():
    return FakeEncoder
