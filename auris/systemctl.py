"""Async wrappers around systemctl for the capture unit."""
from __future__ import annotations

import asyncio
from typing import Sequence

from .config import get_cfg, section


class SystemctlError(RuntimeError):
    """Raised when a systemctl lifecycle command fails."""

    def __init__(self, unit: str, action: str, returncode: int, message: str) -> None:
        super().__init__(f"systemctl {action} {unit} failed ({returncode}): {message}")
        self.unit = unit
        self.action = action
        self.returncode = returncode


def _command_prefix() -> list[str]:
    if section(get_cfg(), "capture").get("use_sudo"):
        return ["sudo", "-n", "systemctl", "--no-ask-password"]
    return ["systemctl", "--no-ask-password"]


async def run_systemctl(args: Sequence[str]) -> tuple[int, str, str]:
    cmd = [*_command_prefix(), *args]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", "systemctl not found"

    stdout_raw, stderr_raw = await proc.communicate()
    stdout = stdout_raw.decode("utf-8", errors="replace")
    stderr = stderr_raw.decode("utf-8", errors="replace")
    return proc.returncode, stdout, stderr


async def is_active(unit: str) -> bool:
    _code, stdout, _stderr = await run_systemctl(["is-active", unit])
    return stdout.strip() == "active"


async def _lifecycle(action: str, unit: str) -> None:
    code, stdout, stderr = await run_systemctl([action, unit])
    if code != 0:
        message = stderr.strip() or stdout.strip() or f"systemctl exited with {code}"
        raise SystemctlError(unit, action, code, message)


async def start_unit(unit: str) -> None:
    await _lifecycle("start", unit)


async def stop_unit(unit: str) -> None:
    await _lifecycle("stop", unit)


async def restart_unit(unit: str) -> None:
    await _lifecycle("restart", unit)
