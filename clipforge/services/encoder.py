"""FFmpeg collaborator: trim-encode and concat as asyncio subprocesses.

Each request runs one ffmpeg process with ``-progress pipe:1`` and reports a
0.0 - 1.0 fraction parsed from ``out_time_us``. Every process is bounded by
a timeout and watches an optional `CancellationToken`; either one kills the
process (its whole process group on POSIX) before raising.

The ffmpeg binary comes from imageio-ffmpeg, the same one MoviePy uses.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Type

import imageio_ffmpeg

from ..core.errors import ConcatError, EncodeError, ExportCancelled, ExportError, IOFailure

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]  # 0.0 - 1.0

AUDIO_RATE = 48000


def default_timeout(expected_duration: float) -> float:
    return max(60.0, 10.0 * expected_duration)


class CancellationToken:
    """Thread-safe cancel flag; cancel() may be called from any thread."""

    poll_interval = 0.1

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExportCancelled("export cancelled")

    async def wait(self) -> None:
        while not self._event.is_set():
            await asyncio.sleep(self.poll_interval)


@dataclass(frozen=True)
class EncodeProfile:
    """Normalised output format shared by every temporary file of one export."""

    fps: int = 30
    width: int = 0  # 0 keeps the source frame size
    height: int = 0
    crf: int = 20
    preset: str = "veryfast"

    def video_filter(self) -> str:
        filters = []
        if self.width > 0 and self.height > 0:
            w, h = _even(self.width), _even(self.height)
            filters.append(f"scale={w}:{h}:force_original_aspect_ratio=decrease")
            filters.append(f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2")
            filters.append("setsar=1")
        filters.append(f"fps={self.fps}")
        return ",".join(filters)


def _even(n: int) -> int:
    return max(2, n - n % 2)


def write_concat_manifest(paths: Sequence[str | Path], manifest_path: str | Path) -> Path:
    """Write an ffmpeg concat-demuxer list, one ``file '...'`` line per input."""
    lines = []
    for p in paths:
        escaped = str(Path(p).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'\n")
    target = Path(manifest_path)
    try:
        target.write_text("".join(lines))
    except OSError as e:
        raise IOFailure(f"cannot write concat manifest {target}: {e}") from e
    return target


class FFmpegEncoder:
    def __init__(self, ffmpeg_path: Optional[str] = None):
        self.ffmpeg_path = ffmpeg_path or imageio_ffmpeg.get_ffmpeg_exe()

    # --- Command builders ---
    def trim_command(
        self,
        source: str,
        start: float,
        duration: float,
        dest: str,
        profile: EncodeProfile,
        has_audio: bool = True,
    ) -> List[str]:
        cmd = [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-loglevel", "error",
            "-ss", f"{start:.3f}", "-t", f"{duration:.3f}", "-i", str(source),
        ]
        if has_audio:
            audio_map = "0:a:0"
        else:
            # silent track so every segment has the same stream layout
            cmd += [
                "-f", "lavfi", "-t", f"{duration:.3f}",
                "-i", f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_RATE}",
            ]
            audio_map = "1:a:0"
        cmd += [
            "-map", "0:v:0", "-map", audio_map,
            "-vf", profile.video_filter(),
            "-c:v", "libx264", "-preset", profile.preset, "-crf", str(profile.crf),
            "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-ar", str(AUDIO_RATE), "-ac", "2",
            "-t", f"{duration:.3f}",
            "-movflags", "+faststart",
            "-progress", "pipe:1", "-nostats",
            str(dest),
        ]
        return cmd

    def copy_command(self, source: str, start: float, duration: float, dest: str) -> List[str]:
        return [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-loglevel", "error",
            "-ss", f"{start:.3f}", "-t", f"{duration:.3f}", "-i", str(source),
            "-map", "0", "-c", "copy", "-avoid_negative_ts", "make_zero",
            "-progress", "pipe:1", "-nostats",
            str(dest),
        ]

    def concat_command(self, manifest: str, dest: str) -> List[str]:
        return [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-loglevel", "error",
            "-f", "concat", "-safe", "0", "-i", str(manifest),
            "-c", "copy", "-movflags", "+faststart",
            "-progress", "pipe:1", "-nostats",
            str(dest),
        ]

    # --- Requests ---
    async def trim_encode(
        self,
        source: str,
        start: float,
        duration: float,
        dest: str,
        profile: EncodeProfile,
        *,
        has_audio: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> str:
        cmd = self.trim_command(source, start, duration, dest, profile, has_audio)
        await self._run(cmd, duration, EncodeError, on_progress, cancel, timeout)
        return dest

    async def stream_copy(
        self,
        source: str,
        start: float,
        duration: float,
        dest: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> str:
        cmd = self.copy_command(source, start, duration, dest)
        await self._run(cmd, duration, EncodeError, on_progress, cancel, timeout)
        return dest

    async def concat(
        self,
        manifest: str | Path,
        dest: str,
        expected_duration: float,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> str:
        cmd = self.concat_command(str(manifest), dest)
        await self._run(cmd, expected_duration, ConcatError, on_progress, cancel, timeout)
        return dest

    # --- Process handling ---
    async def _run(
        self,
        cmd: List[str],
        expected_duration: float,
        error_cls: Type[ExportError],
        on_progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if timeout is None:
            timeout = default_timeout(expected_duration)
        logger.debug("ffmpeg: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise error_cls(f"cannot start ffmpeg: {e}") from e

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        progress_task = asyncio.ensure_future(
            _pump_progress(proc.stdout, expected_duration, on_progress)
        )
        wait_task = asyncio.ensure_future(proc.wait())
        cancel_task = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        waiters = {wait_task} if cancel_task is None else {wait_task, cancel_task}
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if wait_task not in done:
                await _kill(proc)
                if cancel_task is not None and cancel_task in done:
                    raise ExportCancelled("export cancelled")
                raise error_cls(f"ffmpeg timed out after {timeout:.0f}s")
        except asyncio.CancelledError:
            # a sibling task failed and the pipeline is tearing this one down
            await _kill(proc)
            progress_task.cancel()
            stderr_task.cancel()
            raise
        except ExportError:
            progress_task.cancel()
            stderr_task.cancel()
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
        await progress_task
        stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            detail = stderr.splitlines()[-1] if stderr else "no error output"
            raise error_cls(f"ffmpeg exited with {proc.returncode}: {detail}")


async def _pump_progress(
    stream: asyncio.StreamReader,
    expected_duration: float,
    on_progress: Optional[ProgressCallback],
) -> None:
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").strip()
        if on_progress is None:
            continue
        key, _, value = line.partition("=")
        if key in ("out_time_us", "out_time_ms"):  # both are microseconds
            try:
                seconds = int(value) / 1_000_000
            except ValueError:
                continue
            if expected_duration > 0:
                on_progress(min(1.0, max(0.0, seconds / expected_duration)))
        elif key == "progress" and value == "end":
            on_progress(1.0)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


__all__ = [
    "CancellationToken",
    "EncodeProfile",
    "FFmpegEncoder",
    "ProgressCallback",
    "default_timeout",
    "write_concat_manifest",
]
