"""Export pipeline: render a timeline snapshot to one file.

Responsibilities:
 - Take a by-value snapshot of the playback track (never the live store)
 - Single clip: one re-encoding trim, no temporary directory needed
 - Several clips: trim-encode every clip concurrently into a private
   temporary directory, then stream-copy concat them in timeline order
 - Report progress that never goes backwards
 - Render into a hidden sibling of the output path and move it into place
   only on success, so a failed export never touches an existing file
 - Remove temporary files and any partial output whatever the outcome

Gaps between clips are not rendered; clips are joined back to back.
Only track 0 is exported, other tracks are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from ..core.errors import EncodeError, ExportCancelled, ExportError, IOFailure
from ..core.models import EPSILON, PLAYBACK_TRACK, ExportClip
from ..core.timeline import TimelineStore
from ..utils.timefmt import format_time
from .encoder import (
    CancellationToken,
    EncodeProfile,
    FFmpegEncoder,
    ProgressCallback,
    write_concat_manifest,
)

logger = logging.getLogger(__name__)


class RetryPolicy:
    """How many times any single external request is attempted.

    Applies the same way to per-clip encodes, the single-clip encode, the
    concat step and the standalone trim tool. Cancellation is never retried.
    """

    def __init__(self, attempts: int = 1):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts

    async def run(self, label: str, request: Callable[[], Awaitable[str]]) -> str:
        last: Optional[ExportError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await request()
            except ExportCancelled:
                raise
            except ExportError as e:
                last = e
                if attempt < self.attempts:
                    logger.warning("%s failed (attempt %d/%d): %s", label, attempt, self.attempts, e)
        assert last is not None
        raise last


class ExportSettings:
    def __init__(
        self,
        fps: int = 30,
        width: int | None = None,
        height: int | None = None,
        crf: int = 20,
        preset: str = "veryfast",
        temp_root: str | Path | None = None,
        process_timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.fps = fps
        self.width = width
        self.height = height
        self.crf = crf
        self.preset = preset
        self.temp_root = temp_root
        self.process_timeout = process_timeout
        self.retry = retry or RetryPolicy()

    def profile_for(self, clips: Sequence[ExportClip]) -> EncodeProfile:
        """Frame size from the settings, else from the first clip's source."""
        width = self.width or (clips[0].width if clips else 0)
        height = self.height or (clips[0].height if clips else 0)
        return EncodeProfile(
            fps=self.fps, width=width, height=height, crf=self.crf, preset=self.preset
        )


@dataclass(frozen=True)
class ExportResult:
    ok: bool
    output_path: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, path: str) -> "ExportResult":
        return cls(True, output_path=path)

    @classmethod
    def failure(cls, reason: str) -> "ExportResult":
        return cls(False, error=reason)


class MonotonicProgress:
    """Average of per-stage fractions, forwarded only when it increases."""

    def __init__(self, callback: Optional[ProgressCallback], stages: int):
        self._callback = callback
        self._fractions = [0.0] * max(1, stages)
        self.latest = 0.0

    def stage(self, index: int) -> ProgressCallback:
        def update(fraction: float) -> None:
            if fraction > self._fractions[index]:
                self._fractions[index] = min(1.0, fraction)
                self._report(sum(self._fractions) / len(self._fractions))

        return update

    def finish(self) -> None:
        self._report(1.0)

    def _report(self, value: float) -> None:
        if value > self.latest:
            self.latest = value
            if self._callback is not None:
                self._callback(value)


def default_output_path() -> Path:
    timestamp = time.strftime("%Y-%m-%dT%H-%M-%S")
    desktop = Path.home() / "Desktop"
    folder = desktop if desktop.is_dir() else Path.home()
    return folder / f"ClipForge-Export-{timestamp}.mp4"


def prepare_snapshot(clips: Sequence[ExportClip]) -> List[ExportClip]:
    """Playback-track clips in (track, start_time) order."""
    ordered = sorted(
        (c for c in clips if c.track == PLAYBACK_TRACK),
        key=lambda c: (c.track, c.start_time),
    )
    for prev, nxt in zip(ordered, ordered[1:]):
        gap = nxt.start_time - (prev.start_time + prev.duration)
        if gap > EPSILON:
            logger.info(
                "gap of %.3fs before %s is not rendered", gap, format_time(nxt.start_time)
            )
    return ordered


class ExportPipeline:
    def __init__(
        self,
        encoder: Optional[FFmpegEncoder] = None,
        settings: Optional[ExportSettings] = None,
    ):
        self.encoder = encoder or FFmpegEncoder()
        self.settings = settings or ExportSettings()

    async def run(
        self,
        snapshot: Sequence[ExportClip],
        output_path: str | Path,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExportResult:
        """Render ``snapshot`` to ``output_path``; failures come back as a result."""
        clips = prepare_snapshot(snapshot)
        output = Path(output_path)
        if not clips:
            return ExportResult.failure("No clips to export")
        started = time.perf_counter()
        logger.info("exporting %d clip(s) to %s", len(clips), output)
        partial = None
        try:
            try:
                output.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise IOFailure(f"cannot create {output.parent}: {e}") from e
            # an existing file at output stays untouched until the render succeeded
            partial = partial_path(output)
            if len(clips) == 1:
                await self._export_single(clips[0], partial, progress, cancel)
            else:
                await self._export_multi(clips, partial, progress, cancel)
            publish(partial, output)
        except (ExportError, OSError) as e:
            error = e if isinstance(e, ExportError) else IOFailure(str(e))
            if partial is not None:
                discard(partial)
            logger.error("export to %s failed: %s", output, error)
            return ExportResult.failure(str(error))
        logger.info("export finished in %.1fs: %s", time.perf_counter() - started, output)
        return ExportResult.success(str(output))

    async def _export_single(
        self,
        clip: ExportClip,
        output: Path,
        progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> None:
        tracker = MonotonicProgress(progress, 1)
        profile = self.settings.profile_for([])  # keep the source frame size
        await self.settings.retry.run(
            "encode",
            lambda: self.encoder.trim_encode(
                clip.source_path,
                clip.trim_start,
                clip.duration,
                str(output),
                profile,
                has_audio=clip.has_audio,
                on_progress=tracker.stage(0),
                cancel=cancel,
                timeout=self.settings.process_timeout,
            ),
        )
        tracker.finish()

    async def _export_multi(
        self,
        clips: List[ExportClip],
        output: Path,
        progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> None:
        tracker = MonotonicProgress(progress, len(clips) + 1)
        profile = self.settings.profile_for(clips)
        work_dir = self._make_work_dir()
        try:
            temp_files = [work_dir / f"clip-{i:03d}.mp4" for i in range(len(clips))]
            tasks = [
                asyncio.ensure_future(
                    self._encode_clip(clip, dest, profile, tracker.stage(i), cancel)
                )
                for i, (clip, dest) in enumerate(zip(clips, temp_files))
            ]
            await _join_all(tasks, clips)

            manifest = write_concat_manifest(temp_files, work_dir / "concat.txt")
            total = sum(c.duration for c in clips)
            await self.settings.retry.run(
                "concat",
                lambda: self.encoder.concat(
                    manifest,
                    str(output),
                    total,
                    on_progress=tracker.stage(len(clips)),
                    cancel=cancel,
                    timeout=self.settings.process_timeout,
                ),
            )
        finally:
            _remove_tree_quietly(work_dir)
        tracker.finish()

    async def _encode_clip(
        self,
        clip: ExportClip,
        dest: Path,
        profile: EncodeProfile,
        on_progress: ProgressCallback,
        cancel: Optional[CancellationToken],
    ) -> str:
        return await self.settings.retry.run(
            f"encode clip {clip.clip_id}",
            lambda: self.encoder.trim_encode(
                clip.source_path,
                clip.trim_start,
                clip.duration,
                str(dest),
                profile,
                has_audio=clip.has_audio,
                on_progress=on_progress,
                cancel=cancel,
                timeout=self.settings.process_timeout,
            ),
        )

    def _make_work_dir(self) -> Path:
        stamp = time.strftime("%Y%m%d-%H%M%S")
        root = str(self.settings.temp_root) if self.settings.temp_root else None
        try:
            # mkdtemp adds a random suffix, so concurrent exports never share it
            return Path(tempfile.mkdtemp(prefix=f"clipforge-{stamp}-", dir=root))
        except OSError as e:
            raise IOFailure(f"cannot create temporary directory: {e}") from e


async def _join_all(tasks: List["asyncio.Future[str]"], clips: List[ExportClip]) -> None:
    """Wait for every encode; on the first failure cancel the rest and raise once."""
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    failures = []
    for task, clip in zip(tasks, clips):
        if task in done and task.exception() is not None:
            failures.append((clip, task.exception()))
    if not failures:
        return
    if any(isinstance(err, ExportCancelled) for _, err in failures):
        raise ExportCancelled("export cancelled")
    detail = "; ".join(
        f"clip at {format_time(clip.start_time)}: {err}" for clip, err in failures
    )
    message = f"{len(failures)} of {len(tasks)} clip encodes failed: {detail}"
    if all(isinstance(err, (IOFailure, OSError)) for _, err in failures):
        raise IOFailure(message) from failures[0][1]
    raise EncodeError(message) from failures[0][1]


def partial_path(output: Path) -> Path:
    """Reserve a hidden sibling of ``output`` to render into."""
    try:
        fd, name = tempfile.mkstemp(
            prefix=f".{output.stem}-", suffix=output.suffix or ".mp4", dir=output.parent
        )
    except OSError as e:
        raise IOFailure(f"cannot write to {output.parent}: {e}") from e
    os.close(fd)
    return Path(name)


def publish(partial: Path, output: Path) -> None:
    try:
        os.replace(partial, output)
    except OSError as e:
        raise IOFailure(f"cannot move {partial.name} to {output}: {e}") from e


def _remove_tree_quietly(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove temporary directory %s: %s", path, e)


def discard(path: Path) -> None:
    """Delete a partial render; failures are only logged."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove partial output %s: %s", path, e)


async def run_export(
    snapshot: Sequence[ExportClip],
    output_path: str | Path | None = None,
    settings: Optional[ExportSettings] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
    encoder: Optional[FFmpegEncoder] = None,
) -> ExportResult:
    pipeline = ExportPipeline(encoder=encoder, settings=settings)
    return await pipeline.run(
        snapshot, output_path or default_output_path(), progress=progress, cancel=cancel
    )


def export_timeline(
    store: TimelineStore,
    output_path: str | Path | None = None,
    settings: Optional[ExportSettings] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> ExportResult:
    """Blocking export of the store's current playback track."""
    snapshot = store.snapshot()
    return asyncio.run(
        run_export(snapshot, output_path, settings=settings, progress=progress, cancel=cancel)
    )


__all__ = [
    "ExportPipeline",
    "ExportResult",
    "ExportSettings",
    "MonotonicProgress",
    "RetryPolicy",
    "default_output_path",
    "discard",
    "export_timeline",
    "partial_path",
    "prepare_snapshot",
    "publish",
    "run_export",
]
