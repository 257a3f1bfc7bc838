"""Qt playback controller for source preview and composition playback.

TimelinePlaybackController owns the current playback cursor and applies the
pure transitions from `clipforge.core.playback`. It performs their effects:
loading a source into a `ClipAdapter` on clip switches, pulling frames on
seeks and clearing the preview over gaps.

Signals:
    frameReady(object, float)   # frame array (or None for blank) + source seconds
    positionChanged(float)      # composition time in timeline mode, source time in media mode
    stateChanged(str)           # 'stopped'|'playing'|'paused'
    modeChanged(str)            # 'idle'|'media'|'timeline'
    sourceChanged(str)          # path of the source just loaded

Clock: a QTimer ticks at the preview fps and advances by wall-clock elapsed
time, so slow frame decoding drops frames instead of slowing playback down.
"""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Callable, Optional

from PySide6.QtCore import QObject, Qt, QTimer, Signal

from ..core import playback as pb
from ..core.timeline import TimelineStore
from .clip_adapter import ClipAdapter

logger = logging.getLogger(__name__)


class TimelinePlaybackController(QObject):
    frameReady = Signal(object, float)
    positionChanged = Signal(float)
    stateChanged = Signal(str)
    modeChanged = Signal(str)
    sourceChanged = Signal(str)

    def __init__(
        self,
        store: TimelineStore,
        parent: Optional[QObject] = None,
        *,
        fps: float = 30.0,
        loader: Optional[Callable[[str], ClipAdapter]] = None,
    ):
        super().__init__(parent)
        self._store = store
        self._fps = fps or 30.0
        self._loader = loader or ClipAdapter.from_path
        self._adapter = None
        self._cursor: pb.Cursor = pb.Idle()
        self._state = "stopped"
        self._last_tick: Optional[float] = None
        self._timer = QTimer(self)
        self._timer.setTimerType(Qt.PreciseTimer)
        self._timer.timeout.connect(self._tick)

    # --- Queries ---
    @property
    def cursor(self) -> pb.Cursor:
        return self._cursor

    @property
    def mode(self) -> pb.PlaybackMode:
        return self._cursor.mode

    @property
    def adapter(self):
        return self._adapter

    def position(self) -> float:
        cursor = self._cursor
        if isinstance(cursor, pb.TimelineCursor):
            return cursor.composition_time
        if isinstance(cursor, pb.MediaCursor):
            return cursor.source_time
        return 0.0

    def is_playing(self) -> bool:
        return self._cursor.playing

    # --- Public API ---
    def select_source(self, source_id: str):
        self._apply(pb.select_source(self._cursor, self._store, source_id))

    def select_placed_clip(self, clip_id: int):
        self._apply(pb.select_placed_clip(self._cursor, self._store, clip_id))

    def play(self):
        self._apply(pb.play(self._cursor, self._store))

    def play_timeline(self, at: Optional[float] = None):
        self._apply(pb.start_timeline(self._cursor, self._store, at))

    def pause(self):
        self._apply(pb.pause(self._cursor))

    def stop(self):
        self._apply(pb.stop(self._cursor))

    def seek(self, composition_time: float):
        self._apply(pb.seek(self._cursor, self._store, composition_time))

    def refresh(self):
        """Call after editing the timeline so the preview follows the edit."""
        self._apply(pb.refresh(self._cursor, self._store))

    def step(self, elapsed: float):
        """Advance playback by ``elapsed`` seconds (what the timer does per tick)."""
        self._apply(pb.advance(self._cursor, self._store, elapsed))

    # --- Internal ---
    def _apply(self, transition: pb.Transition):
        previous = self._cursor
        self._cursor = transition.cursor
        for effect in transition.effects:
            self._perform(effect)
        if previous.mode is not self._cursor.mode:
            self.modeChanged.emit(self._cursor.mode.value)
        self._sync_clock()
        self.positionChanged.emit(self.position())

    def _perform(self, effect: pb.Effect):
        if isinstance(effect, pb.LoadSource):
            self._release()
            logger.debug("loading %s at %.3f", effect.path, effect.source_time)
            self._adapter = self._loader(effect.path)
            self.sourceChanged.emit(effect.path)
            self._emit_frame(effect.source_time)
        elif isinstance(effect, pb.SeekSource):
            self._emit_frame(effect.source_time)
        elif isinstance(effect, pb.ClearFrame):
            self._release()
            self.frameReady.emit(None, 0.0)
        else:
            raise TypeError(f"unknown playback effect: {effect!r}")

    def _emit_frame(self, source_time: float):
        if self._adapter is None:
            return
        try:
            frame = self._adapter.get_frame(source_time)
        except Exception as e:
            logger.warning("frame decode failed at %.3f: %s", source_time, e)
            self._cursor = pb.pause(self._cursor).cursor
            return
        self.frameReady.emit(frame, source_time)

    def _release(self):
        if self._adapter is not None:
            close = getattr(self._adapter, "close", None)
            if close is not None:
                close()
            self._adapter = None

    def _sync_clock(self):
        if self._cursor.playing:
            state = "playing"
            if not self._timer.isActive():
                self._last_tick = perf_counter()
                self._timer.start(int(1000 / self._fps))
        else:
            state = "stopped" if self._at_end() else "paused"
            if self._timer.isActive():
                self._timer.stop()
            self._last_tick = None
        if state != self._state:
            self._state = state
            self.stateChanged.emit(state)

    def _at_end(self) -> bool:
        cursor = self._cursor
        if isinstance(cursor, pb.Idle):
            return True
        if isinstance(cursor, pb.TimelineCursor):
            return cursor.composition_time >= self._store.total_duration()
        return False

    def _tick(self):
        now = perf_counter()
        elapsed = 0.0 if self._last_tick is None else now - self._last_tick
        self._last_tick = now
        if elapsed > 0:
            self.step(elapsed)


__all__ = ["TimelinePlaybackController"]
