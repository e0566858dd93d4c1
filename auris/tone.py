"""Stream a short sine tone to the Icecast mount to verify the listener path."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping

import aiohttp

from . import systemctl
from .config import get_cfg, section
from .media import test_tone_args

MOUNT_POLL_INTERVAL_SECONDS = 0.2


class TestToneError(RuntimeError):
    """Raised when a test tone cannot be started; ``status`` is an HTTP code."""

    __test__ = False

    def __init__(self, message: str, *, status: int) -> None:
        super().__init__(message)
        self.status = status


class TestToneController:
    __test__ = False

    def __init__(
        self,
        cfg: Mapping[str, Any] | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        cfg = cfg if cfg is not None else get_cfg()
        self._unit = str(section(cfg, "capture")["unit"])
        stream_cfg = section(cfg, "stream")
        self._mount_url = str(stream_cfg["icecast_url"])
        self._password = str(stream_cfg["source_password"])
        self._timeout = float(stream_cfg["mount_timeout_seconds"])
        self._log = logger or logging.getLogger("auris.web")
        self._proc: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task | None = None

    @property
    def playing(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if await systemctl.is_active(self._unit):
            raise TestToneError("Stop the stream first", status=409)
        if self.playing:
            raise TestToneError("Test tone already playing", status=409)

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *test_tone_args(self._mount_url, self._password),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TestToneError(f"Failed to start ffmpeg: {exc}", status=500) from exc
        self._watcher = asyncio.get_running_loop().create_task(self._watch(self._proc))

        if not await self._wait_for_mount():
            raise TestToneError("Timed out waiting for stream", status=504)

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        _stdout, stderr = await proc.communicate()
        if proc.returncode not in (0, None):
            message = (stderr or b"").decode("utf-8", errors="replace").strip()
            self._log.warning("Test tone ffmpeg exited with %s: %s", proc.returncode, message)
        if self._proc is proc:
            self._proc = None

    async def _wait_for_mount(self) -> bool:
        deadline = time.monotonic() + self._timeout
        probe_timeout = aiohttp.ClientTimeout(total=1.0)
        async with aiohttp.ClientSession(timeout=probe_timeout) as session:
            while time.monotonic() < deadline:
                try:
                    async with session.head(self._mount_url) as resp:
                        if resp.status == 200:
                            return True
                except (aiohttp.ClientError, asyncio.TimeoutError):
                    pass
                await asyncio.sleep(MOUNT_POLL_INTERVAL_SECONDS)
        return False

    async def close(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            proc.terminate()
        if self._watcher is not None:
            self._watcher.cancel()
            await asyncio.gather(self._watcher, return_exceptions=True)
            self._watcher = None
        self._proc = None
