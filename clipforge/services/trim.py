"""Single-source trim tool: export one in/out selection of a source.

Unlike the timeline export this tries a stream copy first (fast, but cuts
snap to keyframes) and falls back to a re-encode when the copy fails. Each
of the two strategies is attempted according to the same `RetryPolicy` the
timeline export uses.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..core.errors import ExportCancelled, ExportError, IOFailure, InvalidTrimError
from ..core.models import MIN_CLIP_DURATION, SourceMedia
from ..utils.timefmt import format_time
from .encoder import CancellationToken, FFmpegEncoder, ProgressCallback
from .export import (
    ExportResult,
    ExportSettings,
    MonotonicProgress,
    discard,
    partial_path,
    publish,
)

logger = logging.getLogger(__name__)


def suggested_name(media: SourceMedia) -> str:
    return f"{Path(media.path).stem or 'clip'}_trimmed.mp4"


async def trim_source(
    media: SourceMedia,
    in_point: float,
    out_point: float,
    dest: str | Path,
    *,
    prefer_copy: bool = True,
    settings: Optional[ExportSettings] = None,
    encoder: Optional[FFmpegEncoder] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> ExportResult:
    settings = settings or ExportSettings()
    encoder = encoder or FFmpegEncoder()
    start = max(0.0, min(in_point, out_point))
    end = min(media.duration, max(in_point, out_point))
    if end - start < MIN_CLIP_DURATION:
        return ExportResult.failure(
            str(InvalidTrimError("Selection is too short to export."))
        )
    target = Path(dest)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = partial_path(target)
    except OSError as e:
        return ExportResult.failure(str(IOFailure(f"cannot create {target.parent}: {e}")))
    except IOFailure as e:
        return ExportResult.failure(str(e))

    duration = end - start
    report = MonotonicProgress(progress, 1).stage(0)
    logger.info(
        "trimming %s %s to %s -> %s", media.name, format_time(start), format_time(end), target
    )
    try:
        await _render(media, start, duration, partial, prefer_copy, settings, encoder, report, cancel)
        publish(partial, target)
    except ExportError as e:
        discard(partial)
        return ExportResult.failure(str(e))
    return ExportResult.success(str(target))


async def _render(media, start, duration, dest, prefer_copy, settings, encoder, report, cancel):
    if prefer_copy:
        try:
            await settings.retry.run(
                "stream copy",
                lambda: encoder.stream_copy(
                    media.path, start, duration, str(dest),
                    on_progress=report, cancel=cancel,
                    timeout=settings.process_timeout,
                ),
            )
            return
        except ExportCancelled:
            raise
        except ExportError as e:
            logger.warning("stream copy failed, re-encoding: %s", e)
    profile = settings.profile_for([])
    await settings.retry.run(
        "re-encode",
        lambda: encoder.trim_encode(
            media.path, start, duration, str(dest), profile,
            has_audio=media.has_audio, on_progress=report, cancel=cancel,
            timeout=settings.process_timeout,
        ),
    )


__all__ = ["trim_source", "suggested_name"]
