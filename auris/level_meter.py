"""Playback level readout (RMS in dBFS) for the waveform player."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

FLOOR_DB = -60.0
CEILING_DB = 0.0
RED_ABOVE_DB = -3.0
YELLOW_ABOVE_DB = -12.0
SILENCE_TEXT = "-∞"


@dataclass(frozen=True)
class LevelReading:
    db: float
    percent: float
    color: str
    text: str


def rms_db(samples: Sequence[float] | np.ndarray) -> float:
    """Return the RMS level of a float block in dBFS (``-inf`` for silence)."""
    block = np.asarray(samples, dtype=np.float64)
    if block.size == 0:
        return float("-inf")
    rms = math.sqrt(float(np.mean(block * block)))
    if rms <= 0:
        return float("-inf")
    return 20.0 * math.log10(rms)


def level_color(db: float) -> str:
    if db > RED_ABOVE_DB:
        return "red"
    if db > YELLOW_ABOVE_DB:
        return "yellow"
    return "green"


class LevelMeter:
    def __init__(
        self,
        *,
        text_interval: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._text_interval = text_interval
        self._clock = clock
        self._last_text_at: float | None = None
        self._reading = LevelReading(db=FLOOR_DB, percent=0.0, color="green", text=SILENCE_TEXT)

    @property
    def reading(self) -> LevelReading:
        return self._reading

    def reset(self) -> LevelReading:
        self._last_text_at = None
        self._reading = LevelReading(db=FLOOR_DB, percent=0.0, color="green", text=SILENCE_TEXT)
        return self._reading

    def update(self, samples: Sequence[float] | np.ndarray) -> LevelReading:
        raw_db = rms_db(samples)
        clamped = max(FLOOR_DB, min(CEILING_DB, raw_db))
        percent = (clamped - FLOOR_DB) / (CEILING_DB - FLOOR_DB) * 100.0

        text = self._reading.text
        now = self._clock()
        if self._last_text_at is None or now - self._last_text_at >= self._text_interval:
            self._last_text_at = now
            text = SILENCE_TEXT if math.isinf(raw_db) else f"{raw_db:.1f}"

        self._reading = LevelReading(db=clamped, percent=percent, color=level_color(clamped), text=text)
        return self._reading
