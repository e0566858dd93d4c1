"""Utilities to precompute waveform peaks for fast dashboard rendering."""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import math
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np

from . import db
from .config import get_cfg, section
from .media import pcm_decode_args

NORMALIZATION_MAX = "max"
NORMALIZATION_PERCENTILE = "percentile"
NORMALIZATIONS = (NORMALIZATION_MAX, NORMALIZATION_PERCENTILE)

PERCENTILE = 0.99
CEILING_FLOOR_RATIO = 0.1
OUTPUT_DECIMALS = 3
DEFAULT_EXTENSION = ".mp3"


class WaveformDecodeError(RuntimeError):
    """Raised when ffmpeg cannot decode a recording to PCM."""


@dataclass(frozen=True)
class WaveformSettings:
    sample_rate: int = 8000
    normalization: str = NORMALIZATION_PERCENTILE
    bar_count: int = 1600
    duration_scaled: bool = False
    peaks_per_second: int = 50
    min_peaks: int = 200
    max_peaks: int = 2000

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None = None) -> "WaveformSettings":
        raw = section(cfg if cfg is not None else get_cfg(), "waveform")
        normalization = str(raw.get("normalization", NORMALIZATION_PERCENTILE)).strip().lower()
        if normalization not in NORMALIZATIONS:
            normalization = NORMALIZATION_PERCENTILE
        return cls(
            sample_rate=max(1, int(raw["sample_rate"])),
            normalization=normalization,
            bar_count=max(1, int(raw["bar_count"])),
            duration_scaled=bool(raw["duration_scaled"]),
            peaks_per_second=max(1, int(raw["peaks_per_second"])),
            min_peaks=max(1, int(raw["min_peaks"])),
            max_peaks=max(1, int(raw["max_peaks"])),
        )


@dataclass(frozen=True)
class WaveformResult:
    peaks: list[float]
    json_text: str
    hash: str


@dataclass
class BackfillSummary:
    generated: list[str]
    skipped: list[str]
    failed: list[str]


def compute_peaks(
    samples: Sequence[int] | np.ndarray,
    bar_count: int,
    normalization: str = NORMALIZATION_PERCENTILE,
) -> list[float]:
    """Reduce 16-bit PCM samples to ``bar_count`` peak magnitudes in [0, 1].

    Samples are split into ``bar_count`` contiguous windows of
    ``len(samples) // bar_count`` samples (at least one); any remainder is
    dropped and windows past the end of a short buffer read as silence.

    ``max`` divides by the loudest window. ``percentile`` divides by the 99th
    percentile window, but never by less than 10% of the loudest window, and
    clamps to 1.0 so a single transient cannot flatten the rest of the
    waveform.
    """

    if bar_count < 1:
        raise ValueError("bar_count must be at least 1")
    if normalization not in NORMALIZATIONS:
        raise ValueError(f"unknown normalization {normalization!r}")

    # int32 so abs(-32768) does not wrap
    pcm = np.asarray(samples, dtype=np.int32).ravel()
    if pcm.size == 0:
        return [0.0] * bar_count

    per_bar = max(1, pcm.size // bar_count)
    usable = min(pcm.size, per_bar * bar_count)
    magnitudes = np.zeros(per_bar * bar_count, dtype=np.int32)
    magnitudes[:usable] = np.abs(pcm[:usable])
    peaks = magnitudes.reshape(bar_count, per_bar).max(axis=1).astype(np.float64)

    max_peak = float(peaks.max())
    if max_peak == 0:
        return [0.0] * bar_count

    if normalization == NORMALIZATION_MAX:
        scaled = peaks / max_peak
    else:
        ordered = np.sort(peaks)
        p99 = float(ordered[int(math.floor(ordered.size * PERCENTILE))]) or max_peak
        ceiling = max(p99, max_peak * CEILING_FLOOR_RATIO)
        scaled = np.minimum(1.0, peaks / ceiling)

    return [round(float(value), OUTPUT_DECIMALS) for value in scaled]


def bar_count_for_duration(seconds: float, settings: WaveformSettings | None = None) -> int:
    """Scale the bar count with clip length, bounded by min/max peaks."""
    cfg = settings or WaveformSettings()
    wanted = int(math.floor(max(0.0, seconds) * cfg.peaks_per_second + 0.5))
    return min(cfg.max_peaks, max(cfg.min_peaks, wanted))


def hash_waveform(json_text: str) -> str:
    return hashlib.sha256(json_text.encode("utf-8")).hexdigest()[:8]


def dump_peaks(peaks: Sequence[float]) -> str:
    return json.dumps(list(peaks), separators=(",", ":"))


def decode_pcm(source: os.PathLike[str] | str, sample_rate: int) -> np.ndarray:
    """Decode ``source`` to mono 16-bit PCM samples via ffmpeg."""

    cmd = pcm_decode_args(source, sample_rate)
    try:
        result = subprocess.run(cmd, capture_output=True, check=False)
    except (OSError, subprocess.SubprocessError) as exc:
        raise WaveformDecodeError(f"ffmpeg failed while decoding {source}: {exc}") from exc
    if result.returncode != 0:
        raise WaveformDecodeError(f"ffmpeg exited with code {result.returncode} for {source}")
    raw = result.stdout or b""
    usable = len(raw) - (len(raw) % 2)
    return np.frombuffer(raw[:usable], dtype="<i2")


def generate_waveform(
    source: os.PathLike[str] | str,
    settings: WaveformSettings | None = None,
) -> WaveformResult:
    """Decode a recording and return its peaks, JSON payload and content hash."""

    cfg = settings or WaveformSettings.from_config()
    samples = decode_pcm(source, cfg.sample_rate)
    if cfg.duration_scaled:
        bar_count = bar_count_for_duration(samples.size / float(cfg.sample_rate), cfg)
    else:
        bar_count = cfg.bar_count
    peaks = compute_peaks(samples, bar_count, cfg.normalization)
    json_text = dump_peaks(peaks)
    return WaveformResult(peaks=peaks, json_text=json_text, hash=hash_waveform(json_text))


class WaveformJobs:
    """Background waveform generation, one in-flight job per recording."""

    def __init__(
        self,
        recordings_dir: Path,
        settings: WaveformSettings | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._recordings_dir = Path(recordings_dir)
        self._settings = settings or WaveformSettings.from_config()
        self._log = logger or logging.getLogger("auris.waveform")
        self._tasks: dict[str, asyncio.Task] = {}

    def pending(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def schedule(self, filename: str) -> asyncio.Task:
        existing = self._tasks.get(filename)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.get_running_loop().create_task(self._run(filename))
        self._tasks[filename] = task

        def _forget(done: asyncio.Task, name: str = filename) -> None:
            if self._tasks.get(name) is done:
                self._tasks.pop(name, None)

        task.add_done_callback(_forget)
        return task

    async def _run(self, filename: str) -> WaveformResult | None:
        path = self._recordings_dir / filename
        try:
            result = await asyncio.to_thread(generate_waveform, path, self._settings)
            stored = await asyncio.to_thread(db.store_waveform, filename, result.json_text, result.hash)
        except WaveformDecodeError as exc:
            self._log.warning("Waveform generation failed for %s: %s", filename, exc)
            return None
        except Exception:  # noqa: BLE001 - background job, log and continue
            self._log.exception("Unexpected waveform failure for %s", filename)
            return None
        if not stored:
            self._log.debug("Recording %s vanished before its waveform was stored", filename)
        else:
            self._log.info("Generated waveform for %s (%d peaks)", filename, len(result.peaks))
        return result

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def backfill_missing_waveforms(
    recordings_dir: os.PathLike[str] | str,
    *,
    settings: WaveformSettings | None = None,
    force: bool = False,
    strict: bool = False,
) -> BackfillSummary:
    """Generate cached waveforms for any recordings that are missing them."""

    root = Path(recordings_dir)
    summary = BackfillSummary(generated=[], skipped=[], failed=[])
    if not root.is_dir():
        return summary

    cfg = settings or WaveformSettings.from_config()
    db.sync_existing_recordings(root)

    audio_files = sorted(p for p in root.iterdir() if p.is_file() and p.suffix == DEFAULT_EXTENSION)
    names = [p.name for p in audio_files]
    missing = set(names) if force else db.filenames_missing_waveform(names)

    for audio_path in audio_files:
        if audio_path.name not in missing:
            summary.skipped.append(audio_path.name)
            continue
        try:
            result = generate_waveform(audio_path, cfg)
            if not db.store_waveform(audio_path.name, result.json_text, result.hash):
                db.index_recording(audio_path)
                db.store_waveform(audio_path.name, result.json_text, result.hash)
        except Exception as exc:  # noqa: BLE001 - log and continue unless strict
            print(f"[waveform] Failed: {audio_path.name}: {exc}", flush=True)
            summary.failed.append(audio_path.name)
            if strict:
                raise
            continue
        summary.generated.append(audio_path.name)
        print(f"[waveform] Generated: {audio_path.name} ({len(result.peaks)} peaks)", flush=True)

    return summary


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate cached waveform peaks for recordings.")
    parser.add_argument(
        "--recordings-dir",
        help="Directory holding the .mp3 recordings (defaults to config paths.recordings_dir)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Regenerate all waveforms, even if cached",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Abort on the first recording that fails to decode",
    )
    args = parser.parse_args(argv)

    cfg = get_cfg()
    recordings_dir = Path(args.recordings_dir or section(cfg, "paths")["recordings_dir"])
    if not recordings_dir.is_dir():
        print(f"[waveform] Cannot read directory: {recordings_dir}", flush=True)
        return 1

    try:
        summary = backfill_missing_waveforms(
            recordings_dir,
            settings=WaveformSettings.from_config(cfg),
            force=args.force,
            strict=args.strict,
        )
    except Exception as exc:  # pragma: no cover - surfaced to caller
        parser.error(str(exc))
        return 1

    print(
        f"[waveform] Done. Generated: {len(summary.generated)}, "
        f"Skipped (already cached): {len(summary.skipped)}, "
        f"Failed: {len(summary.failed)}",
        flush=True,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
