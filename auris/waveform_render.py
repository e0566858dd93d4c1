"""Waveform bar rendering and the playback-synchronised draw loop.

The player owns its own frame buffer and is driven by a frame scheduler, so
callers only issue commands (load, play, pause, seek, resize) and read derived
display state (``time_text``, ``state``, ``controls_enabled``).
"""

from __future__ import annotations

import asyncio
import enum
import io
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence

import aiohttp
import numpy as np
from PIL import Image

from .config import section
from .level_meter import LevelMeter

BAR_HEIGHT_RATIO = 0.85
MIN_BAR_HEIGHT = 2.0
DEFAULT_THEME = "dark"


class PeakFetchError(RuntimeError):
    """Raised when waveform peaks cannot be fetched or are malformed."""


def format_time(seconds: float) -> str:
    if not isinstance(seconds, (int, float)) or not math.isfinite(seconds) or seconds < 0:
        seconds = 0.0
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"


def resample(peaks: Sequence[float], width: int) -> list[float]:
    """Resample a peak array to exactly ``width`` bars.

    Downsampling keeps the maximum of each proportional range so visual peaks
    survive; upsampling interpolates linearly between neighbouring points.
    """

    if width <= 0:
        return []
    data = np.asarray(peaks, dtype=np.float64)
    size = int(data.size)
    if size == 0:
        return [0.0] * width
    if size == width:
        return data.tolist()
    if size > width:
        ratio = size / width
        result: list[float] = []
        for i in range(width):
            start = int(math.floor(i * ratio))
            end = int(math.floor((i + 1) * ratio))
            result.append(float(data[start:end].max(initial=0.0)))
        return result
    if width == 1:
        return [float(data[0])]
    positions = np.arange(width, dtype=np.float64) * ((size - 1) / (width - 1))
    lo = np.floor(positions).astype(np.int64)
    hi = np.minimum(lo + 1, size - 1)
    frac = positions - lo
    return (data[lo] * (1.0 - frac) + data[hi] * frac).tolist()


def _hex_to_rgb(value: str) -> tuple[int, int, int]:
    text = value.strip().lstrip("#")
    if len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    if len(text) != 6:
        raise ValueError(f"invalid color {value!r}")
    return int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16)


@dataclass(frozen=True)
class ThemeColors:
    played: str
    unplayed: str
    background: str

    def rgb(self, token: str) -> tuple[int, int, int]:
        return _hex_to_rgb(getattr(self, token))


def resolve_theme(cfg: Mapping[str, Any], name: str | None = None) -> ThemeColors:
    """Look up the played/unplayed/background color tokens for a theme."""

    renderer = section(cfg, "renderer")
    themes = renderer.get("themes") or {}
    wanted = (name or renderer.get("theme") or DEFAULT_THEME).strip().lower()
    tokens = themes.get(wanted) or themes.get(DEFAULT_THEME) or {}
    colors = ThemeColors(
        played=str(tokens.get("played", "#3b82f6")),
        unplayed=str(tokens.get("unplayed", "#4b5563")),
        background=str(tokens.get("background", "#0a0a0a")),
    )
    for token in ("played", "unplayed", "background"):
        colors.rgb(token)
    return colors


class FrameBuffer:
    """RGB pixel buffer sized to a display box times the device pixel ratio."""

    def __init__(self, width: int, height: int, pixel_ratio: float = 1.0) -> None:
        self.width = 0
        self.height = 0
        self.pixel_ratio = 1.0
        self.pixels = np.zeros((0, 0, 3), dtype=np.uint8)
        self._valid = False
        self.resize(width, height, pixel_ratio)

    @property
    def backing_size(self) -> tuple[int, int]:
        return (
            max(0, int(round(self.width * self.pixel_ratio))),
            max(0, int(round(self.height * self.pixel_ratio))),
        )

    def resize(self, width: int, height: int, pixel_ratio: float | None = None) -> None:
        self.width = max(0, int(width))
        self.height = max(0, int(height))
        if pixel_ratio is not None:
            self.pixel_ratio = pixel_ratio if pixel_ratio > 0 else 1.0
        self.invalidate()

    def invalidate(self) -> None:
        self._valid = False

    def ensure(self) -> bool:
        """Reallocate the backing pixels if invalidated; True when reallocated."""
        backing_w, backing_h = self.backing_size
        if self._valid and self.pixels.shape[:2] == (backing_h, backing_w):
            return False
        self.pixels = np.zeros((backing_h, backing_w, 3), dtype=np.uint8)
        self._valid = True
        return True

    def clear(self, color: tuple[int, int, int]) -> None:
        self.ensure()
        self.pixels[:, :] = color

    def fill_bar(self, x: float, y: float, width: float, height: float, color: tuple[int, int, int]) -> None:
        ratio = self.pixel_ratio
        backing_w, backing_h = self.backing_size
        x0 = int(round(x * ratio))
        x1 = max(x0 + 1, int(round((x + width) * ratio)))
        y0 = int(math.floor(y * ratio))
        y1 = int(math.ceil((y + height) * ratio))
        x0, x1 = max(0, x0), min(backing_w, x1)
        y0, y1 = max(0, y0), min(backing_h, y1)
        if x1 <= x0 or y1 <= y0:
            return
        self.pixels[y0:y1, x0:x1] = color

    def color_at(self, x: float, y: float) -> tuple[int, int, int]:
        px = min(self.pixels.shape[1] - 1, int(x * self.pixel_ratio))
        py = min(self.pixels.shape[0] - 1, int(y * self.pixel_ratio))
        return tuple(int(c) for c in self.pixels[py, px])  # type: ignore[return-value]

    def to_image(self) -> Image.Image:
        self.ensure()
        return Image.fromarray(self.pixels, "RGB")

    def to_png(self) -> bytes:
        out = io.BytesIO()
        self.to_image().save(out, format="PNG")
        return out.getvalue()


def paint_bars(
    buffer: FrameBuffer,
    bars: Sequence[float],
    progress: float,
    colors: ThemeColors,
) -> None:
    buffer.ensure()
    buffer.clear(colors.rgb("background"))
    count = len(bars)
    if count == 0:
        return
    played = colors.rgb("played")
    unplayed = colors.rgb("unplayed")
    height = buffer.height
    center_y = height / 2.0
    for index, value in enumerate(bars):
        bar_height = max(MIN_BAR_HEIGHT, value * height * BAR_HEIGHT_RATIO)
        y = center_y - bar_height / 2.0
        color = played if index / count <= progress else unplayed
        buffer.fill_bar(index, y, 1, bar_height, color)


def paint_waveform(
    buffer: FrameBuffer,
    peaks: Sequence[float],
    progress: float,
    colors: ThemeColors,
) -> list[float]:
    bars = resample(peaks, buffer.width)
    paint_bars(buffer, bars, progress, colors)
    return bars


def render_waveform_png(
    peaks: Sequence[float],
    width: int,
    height: int,
    progress: float,
    colors: ThemeColors,
    pixel_ratio: float = 1.0,
) -> bytes:
    buffer = FrameBuffer(width, height, pixel_ratio)
    paint_waveform(buffer, peaks, max(0.0, min(1.0, progress)), colors)
    return buffer.to_png()


def _checked_peaks(values: Sequence[Any]) -> tuple[float, ...]:
    peaks = tuple(float(value) for value in values)
    if not peaks:
        raise ValueError("peaks must not be empty")
    for value in peaks:
        if not math.isfinite(value) or value < 0.0 or value > 1.0:
            raise ValueError(f"peak value out of range: {value!r}")
    return peaks


async def fetch_peaks(session: aiohttp.ClientSession, url: str) -> list[float]:
    async with session.get(url) as resp:
        if resp.status != 200:
            raise PeakFetchError(f"Failed to load waveform ({resp.status})")
        try:
            data = await resp.json(content_type=None)
        except ValueError as exc:
            raise PeakFetchError(f"Waveform payload is not valid JSON: {exc}") from exc
    if not isinstance(data, list) or not data:
        raise PeakFetchError("Waveform payload must be a non-empty array")
    try:
        return list(_checked_peaks(data))
    except (TypeError, ValueError) as exc:
        raise PeakFetchError(f"Invalid waveform payload: {exc}") from exc


class FrameScheduler(Protocol):
    def request_frame(self, callback: Callable[[float], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class AsyncioFrameScheduler:
    """Run frame callbacks on an event loop at a fixed refresh interval."""

    def __init__(
        self,
        interval: float = 1.0 / 60.0,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = float(interval)
        self._loop = loop

    def request_frame(self, callback: Callable[[float], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(self._interval, lambda: callback(loop.time()))

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class PlaybackSource(Protocol):
    current_time: float
    duration: float

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, seconds: float) -> None: ...


class PlayerState(str, enum.Enum):
    IDLE = "idle"
    LOADED = "loaded"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"


def _finite_duration(value: Any) -> float:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(duration) or duration <= 0:
        return 0.0
    return duration


class WaveformPlayer:
    """Waveform view state machine synchronised to a playback source."""

    def __init__(
        self,
        source: PlaybackSource,
        scheduler: FrameScheduler,
        colors: ThemeColors,
        *,
        width: int,
        height: int,
        pixel_ratio: float = 1.0,
        time_text_interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        on_ended: Callable[[], None] | None = None,
        on_time_text: Callable[[str], None] | None = None,
        level_meter: LevelMeter | None = None,
        level_source: Callable[[], Sequence[float] | None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._source = source
        self._scheduler = scheduler
        self._colors = colors
        self._buffer = FrameBuffer(width, height, pixel_ratio)
        self._time_text_interval = max(0.0, float(time_text_interval))
        self._clock = clock
        self._on_ended = on_ended
        self._on_time_text = on_time_text
        self._level_meter = level_meter
        self._level_source = level_source
        self._log = logger or logging.getLogger("auris.render")

        self._state = PlayerState.IDLE
        self._peaks: tuple[float, ...] | None = None
        self._bars_cache: tuple[int, list[float]] | None = None
        self._progress = 0.0
        self._frame_handle: Any = None
        self._load_task: asyncio.Task | None = None
        self._disposed = False
        self._time_text = "0:00 / 0:00"
        self._last_time_text_at: float | None = None
        self.frames_drawn = 0

    @classmethod
    def from_config(
        cls,
        source: PlaybackSource,
        cfg: Mapping[str, Any],
        *,
        width: int,
        height: int,
        theme: str | None = None,
        **kwargs: Any,
    ) -> "WaveformPlayer":
        """Build a player on the running event loop using ``renderer`` settings."""
        renderer = section(cfg, "renderer")
        return cls(
            source,
            AsyncioFrameScheduler(interval=float(renderer["frame_interval_sec"])),
            resolve_theme(cfg, theme),
            width=width,
            height=height,
            pixel_ratio=float(renderer["pixel_ratio"]),
            time_text_interval=float(renderer["time_text_interval_sec"]),
            **kwargs,
        )

    # --- read-only view state ---
    @property
    def state(self) -> PlayerState:
        return self._state

    @property
    def controls_enabled(self) -> bool:
        return self._peaks is not None and not self._disposed

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def time_text(self) -> str:
        return self._time_text

    @property
    def buffer(self) -> FrameBuffer:
        return self._buffer

    @property
    def frame_pending(self) -> bool:
        return self._frame_handle is not None

    # --- loading ---
    def load_peaks(self, peaks: Sequence[float]) -> None:
        if self._disposed:
            return
        self._peaks = _checked_peaks(peaks)
        self._bars_cache = None
        if self._state is PlayerState.IDLE:
            self._state = PlayerState.LOADED
            self._progress = 0.0
        self._draw(self._progress)

    def load_failed(self, exc: BaseException) -> None:
        # Stays idle; controls remain disabled until a retry succeeds.
        self._log.warning("Waveform peaks unavailable: %s", exc)

    def load_from_url(self, session: aiohttp.ClientSession, url: str) -> asyncio.Task:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = asyncio.get_running_loop().create_task(self._fetch_and_load(session, url))
        return self._load_task

    async def _fetch_and_load(self, session: aiohttp.ClientSession, url: str) -> None:
        try:
            peaks = await fetch_peaks(session, url)
        except (PeakFetchError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if not self._disposed:
                self.load_failed(exc)
            return
        if self._disposed:
            return
        self.load_peaks(peaks)

    # --- playback commands ---
    def play(self) -> bool:
        if not self.controls_enabled:
            return False
        if self._state is PlayerState.PLAYING:
            return True
        if self._state is PlayerState.ENDED:
            self._source.seek(0.0)
            self._progress = 0.0
        self._source.play()
        self._state = PlayerState.PLAYING
        self._schedule_frame()
        return True

    def pause(self) -> None:
        if self._state is not PlayerState.PLAYING:
            return
        self._source.pause()
        self._cancel_frame()
        self._state = PlayerState.PAUSED
        if self._level_meter is not None:
            self._level_meter.reset()

    def ended(self) -> None:
        if self._state not in (PlayerState.PLAYING, PlayerState.PAUSED, PlayerState.LOADED):
            return
        self._cancel_frame()
        total = _finite_duration(self._source.duration)
        self._update_time_text(total, total, force=True)
        self._draw(1.0)
        self._state = PlayerState.ENDED
        if self._level_meter is not None:
            self._level_meter.reset()
        if self._on_ended is not None:
            self._on_ended()

    def click(self, x: float) -> float | None:
        """Seek to the fraction of the surface width at ``x`` (CSS pixels)."""
        width = self._buffer.width
        if width <= 0:
            return None
        return self.seek_fraction(x / width)

    def seek_fraction(self, fraction: float) -> float | None:
        duration = _finite_duration(self._source.duration)
        if not self.controls_enabled or duration <= 0:
            return None
        ratio = max(0.0, min(1.0, float(fraction)))
        self._source.seek(ratio * duration)
        self._update_time_text(ratio * duration, duration, force=True)
        self._draw(ratio)
        if self._state is PlayerState.ENDED and ratio < 1.0:
            self._state = PlayerState.PAUSED
        return ratio

    def resize(self, width: int, height: int, pixel_ratio: float | None = None) -> None:
        self._buffer.resize(width, height, pixel_ratio)
        self._bars_cache = None
        if self._peaks is None or self._disposed:
            return
        if self._state is not PlayerState.PLAYING and self._frame_handle is None:
            self._frame_handle = self._scheduler.request_frame(self._redraw_frame)

    def dispose(self) -> None:
        self._disposed = True
        self._cancel_frame()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None

    # --- frame loop ---
    def _schedule_frame(self) -> None:
        if self._frame_handle is None and not self._disposed:
            self._frame_handle = self._scheduler.request_frame(self._on_frame)

    def _cancel_frame(self) -> None:
        handle = self._frame_handle
        self._frame_handle = None
        if handle is not None:
            self._scheduler.cancel(handle)

    def _current_progress(self) -> tuple[float, float, float]:
        current = max(0.0, float(self._source.current_time or 0.0))
        duration = _finite_duration(self._source.duration)
        progress = min(1.0, current / duration) if duration else 0.0
        return current, duration, progress

    def _redraw_frame(self, _timestamp: float) -> None:
        self._frame_handle = None
        if self._disposed:
            return
        if self._state is PlayerState.PLAYING:
            self._on_frame(_timestamp)
            return
        if self._state is PlayerState.ENDED:
            self._draw(1.0)
            return
        _current, duration, progress = self._current_progress()
        self._draw(progress if duration else self._progress)

    def _on_frame(self, _timestamp: float) -> None:
        self._frame_handle = None
        if self._disposed or self._state is not PlayerState.PLAYING:
            return
        current, duration, progress = self._current_progress()
        if duration and current >= duration:
            self.ended()
            return
        self._update_time_text(current, duration)
        self._draw(progress)
        if self._level_meter is not None and self._level_source is not None:
            block = self._level_source()
            if block is not None:
                self._level_meter.update(block)
        self._schedule_frame()

    def _bars(self) -> list[float]:
        width = self._buffer.width
        cached = self._bars_cache
        if cached is not None and cached[0] == width:
            return cached[1]
        assert self._peaks is not None
        bars = resample(self._peaks, width)
        self._bars_cache = (width, bars)
        return bars

    def _draw(self, progress: float) -> None:
        if self._peaks is None:
            return
        self._progress = progress
        paint_bars(self._buffer, self._bars(), progress, self._colors)
        self.frames_drawn += 1

    def _update_time_text(self, current: float, total: float, *, force: bool = False) -> None:
        now = self._clock()
        last = self._last_time_text_at
        if not force and last is not None and now - last < self._time_text_interval:
            return
        self._last_time_text_at = now
        text = f"{format_time(current)} / {format_time(total)}"
        if text == self._time_text:
            return
        self._time_text = text
        if self._on_time_text is not None:
            self._on_time_text(text)
