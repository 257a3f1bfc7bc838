"""Qt worker that runs an export on its own thread.

Usage::

    worker = ExportWorker(store.snapshot(), "out.mp4")
    thread = QThread()
    worker.moveToThread(thread)
    thread.started.connect(worker.run)
    worker.finished.connect(thread.quit)
    worker.failed.connect(thread.quit)
    thread.start()

The snapshot is taken by the caller before the worker exists, so edits made
while the export runs never reach it. `cancel()` is safe to call from the
GUI thread.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Sequence

from PySide6.QtCore import QObject, Signal

from ..core.models import ExportClip
from .encoder import CancellationToken, FFmpegEncoder
from .export import ExportSettings, run_export


class ExportWorker(QObject):
    progress = Signal(float)  # 0.0 - 1.0, never decreasing
    finished = Signal(str)  # output path
    failed = Signal(str)  # human-readable reason

    def __init__(
        self,
        snapshot: Sequence[ExportClip],
        output_path: str | Path | None = None,
        settings: Optional[ExportSettings] = None,
        encoder: Optional[FFmpegEncoder] = None,
    ):
        super().__init__()
        self._snapshot = tuple(snapshot)
        self._output = output_path
        self._settings = settings
        self._encoder = encoder
        self._token = CancellationToken()

    def cancel(self):
        self._token.cancel()

    def run(self):  # executed in thread
        result = asyncio.run(
            run_export(
                self._snapshot,
                self._output,
                settings=self._settings,
                progress=self.progress.emit,
                cancel=self._token,
                encoder=self._encoder,
            )
        )
        if result.ok:
            self.finished.emit(result.output_path)
        else:
            self.failed.emit(result.error or "export failed")


__all__ = ["ExportWorker"]
