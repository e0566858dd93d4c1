"""Shared helpers for building ffmpeg/ffprobe command lines."""

from __future__ import annotations

import functools
import os
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

DEFAULT_SAMPLE_FORMAT = "s16le"
TEST_TONE_FREQUENCY_HZ = 440
TEST_TONE_SECONDS = 3


@functools.lru_cache(maxsize=1024)
def _probe_duration_cached(path_str: str, mtime_ns: int, size_bytes: int) -> float | None:
    _ = (mtime_ns, size_bytes)  # cache key only
    cmd = [
        "ffprobe",
        "-v",
        "quiet",
        "-show_entries",
        "format=duration",
        "-of",
        "csv=p=0",
        path_str,
    ]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
        )
    except (subprocess.SubprocessError, FileNotFoundError, PermissionError):
        return None

    try:
        duration = float((result.stdout or "").strip())
    except (TypeError, ValueError):
        return None

    if duration != duration or duration < 0:  # NaN
        return None
    return duration


def probe_duration(path: os.PathLike[str] | str) -> float | None:
    """Return the container duration in seconds, or None when unknown."""
    target = Path(path)
    try:
        stat = target.stat()
    except OSError:
        return None
    return _probe_duration_cached(str(target), int(stat.st_mtime_ns), int(stat.st_size))


def pcm_decode_args(
    source: os.PathLike[str] | str,
    sample_rate: int,
    *,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return an ffmpeg argv that decodes ``source`` to mono PCM on stdout."""

    return [
        "ffmpeg",
        "-v",
        "quiet",
        "-i",
        str(source),
        "-f",
        sample_format,
        "-ac",
        "1",
        "-ar",
        str(sample_rate),
        "pipe:1",
    ]


def icecast_target(mount_url: str, password: str, user: str = "source") -> str:
    """Translate an http mount URL into ffmpeg's icecast:// output URL."""

    parts = urlsplit(mount_url)
    host = parts.hostname or "localhost"
    netloc = f"{user}:{password}@{host}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit(("icecast", netloc, parts.path or "/", "", ""))


def test_tone_args(mount_url: str, password: str) -> list[str]:
    """Return an ffmpeg argv streaming a short sine tone to an Icecast mount."""

    return [
        "ffmpeg",
        "-re",
        "-f",
        "lavfi",
        "-i",
        f"sine=frequency={TEST_TONE_FREQUENCY_HZ}:duration={TEST_TONE_SECONDS}",
        "-acodec",
        "libmp3lame",
        "-ab",
        "128k",
        "-ar",
        "44100",
        "-ac",
        "1",
        "-content_type",
        "audio/mpeg",
        "-f",
        "mp3",
        icecast_target(mount_url, password),
    ]
