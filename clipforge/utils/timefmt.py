"""``mm:ss.mmm`` timestamps for log lines and error messages."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

__all__ = ["format_time"]

_MS = Decimal("0.001")


def format_time(seconds: float) -> str:
    # NaN, inf and negatives show as zero; minutes are not wrapped into hours
    if not 0 < seconds < float("inf"):
        seconds = 0.0
    ms = int(Decimal(str(seconds)).quantize(_MS, rounding=ROUND_HALF_UP) * 1000)
    return f"{ms // 60_000:02d}:{ms // 1000 % 60:02d}.{ms % 1000:03d}"
