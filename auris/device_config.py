"""Read and update the environment file consumed by the capture unit."""
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping

from .config import get_cfg, section

_ENV_LINE = re.compile(r"^(\w+)=(.*)$")
_CARD_PATTERN = re.compile(r"^plughw:(\d+)")


@dataclass(frozen=True)
class CaptureMode:
    stream: bool
    record: bool

    def to_dict(self) -> dict[str, bool]:
        return {"stream": self.stream, "record": self.record}


def _env_path() -> Path:
    return Path(section(get_cfg(), "capture")["env_file"])


def read_env_file(env_path: Path | None = None) -> Dict[str, str]:
    path = env_path or _env_path()
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    values: Dict[str, str] = {}
    for line in content.splitlines():
        match = _ENV_LINE.match(line)
        if match:
            values[match.group(1)] = match.group(2)
    return values


def _render_env(values: Mapping[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in values.items())


def write_env_file(values: Mapping[str, str], env_path: Path | None = None) -> None:
    path = env_path or _env_path()
    content = _render_env(values)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
        tmp_path.replace(path)
        return
    except PermissionError:
        if not section(get_cfg(), "capture").get("use_sudo"):
            raise
    # /etc/default is root-owned on the appliance
    subprocess.run(
        ["sudo", "-n", "tee", str(path)],
        input=content,
        text=True,
        stdout=subprocess.DEVNULL,
        check=True,
    )


def get_selected_device() -> str:
    values = read_env_file()
    default = str(section(get_cfg(), "capture")["default_device"])
    return values.get("ALSA_DEVICE") or default


def set_selected_device(alsa_id: str) -> None:
    values = read_env_file()
    values["ALSA_DEVICE"] = alsa_id
    write_env_file(values)


def get_capture_mode() -> CaptureMode:
    values = read_env_file()
    return CaptureMode(
        stream=values.get("CAPTURE_STREAM") == "1",
        record=values.get("CAPTURE_RECORD") == "1",
    )


def set_capture_mode(*, stream: bool | None = None, record: bool | None = None) -> CaptureMode:
    values = read_env_file()
    if stream is not None:
        values["CAPTURE_STREAM"] = "1" if stream else "0"
    if record is not None:
        values["CAPTURE_RECORD"] = "1" if record else "0"
    write_env_file(values)
    return CaptureMode(
        stream=values.get("CAPTURE_STREAM") == "1",
        record=values.get("CAPTURE_RECORD") == "1",
    )


def card_from_device(alsa_id: str) -> int:
    match = _CARD_PATTERN.match(alsa_id or "")
    return int(match.group(1)) if match else 0
