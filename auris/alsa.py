"""Enumerate ALSA capture devices and drive the capture mixer via amixer."""

from __future__ import annotations

import re
import subprocess
from dataclasses import asdict, dataclass
from typing import List, Sequence

from .config import get_cfg, section

CAPTURE_RANGE = (0, 63)
MIC_BOOST_RANGE = (0, 3)

_DEVICE_LINE = re.compile(
    r"^card\s+(?P<card>\d+):\s*\S+\s*\[(?P<card_name>.+?)\],\s*"
    r"device\s+(?P<device>\d+):\s*(?P<device_name>.+?)\s*\[",
    re.MULTILINE,
)
_LIMITS = re.compile(r"Limits:.*?(\d+) - (\d+)")
_FRONT_LEFT = re.compile(r"Front Left:.*?(\d+) \[(\d+)%\] \[(.+?dB)\](?:\s*\[(on|off)\])?")
_ITEMS = re.compile(r"Items:\s*(.+)")
_ITEM0 = re.compile(r"Item0:\s*'(.+?)'")
_QUOTED = re.compile(r"'([^']+)'")


class AlsaError(RuntimeError):
    """Raised when an amixer write fails."""


@dataclass(frozen=True)
class CaptureDevice:
    card: int
    device: int
    name: str
    card_name: str
    alsa_id: str

    def to_dict(self) -> dict[str, object]:
        return {
            "card": self.card,
            "device": self.device,
            "name": self.name,
            "cardName": self.card_name,
            "alsaId": self.alsa_id,
        }


@dataclass(frozen=True)
class MixerVolume:
    name: str
    min: int
    max: int
    value: int
    percent: int
    db: str
    enabled: bool

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["dB"] = payload.pop("db")
        return payload


@dataclass(frozen=True)
class MixerEnum:
    name: str
    items: list[str]
    current: str

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "items": list(self.items), "current": self.current}


def _sudo_prefix() -> list[str]:
    return ["sudo", "-n"] if section(get_cfg(), "capture").get("use_sudo") else []


def _run(command: Sequence[str]) -> str:
    """Run a command and return stdout; raise AlsaError on failure."""
    try:
        result = subprocess.run(
            [*_sudo_prefix(), *command],
            check=False,
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except (FileNotFoundError, subprocess.SubprocessError) as exc:
        raise AlsaError(f"{command[0]} failed: {exc}") from exc
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip()
        raise AlsaError(f"{' '.join(command)} exited with {result.returncode}: {message}")
    return result.stdout or ""


def parse_capture_devices(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    for match in _DEVICE_LINE.finditer(output or ""):
        card = int(match.group("card"))
        device = int(match.group("device"))
        devices.append(
            CaptureDevice(
                card=card,
                device=device,
                name=match.group("device_name"),
                card_name=match.group("card_name"),
                alsa_id=f"plughw:{card},{device}",
            )
        )
    return devices


def list_capture_devices() -> List[CaptureDevice]:
    """Return ALSA capture devices parsed from `arecord -l`."""
    try:
        output = _run(["arecord", "-l"])
    except AlsaError:
        return []
    return parse_capture_devices(output)


def parse_volume(name: str, output: str) -> MixerVolume | None:
    limits = _LIMITS.search(output or "")
    value = _FRONT_LEFT.search(output or "")
    if not limits or not value:
        return None
    switch = value.group(4)
    return MixerVolume(
        name=name,
        min=int(limits.group(1)),
        max=int(limits.group(2)),
        value=int(value.group(1)),
        percent=int(value.group(2)),
        db=value.group(3),
        enabled=switch == "on" if switch else True,
    )


def parse_enum(name: str, output: str) -> MixerEnum | None:
    items_match = _ITEMS.search(output or "")
    if not items_match:
        return None
    items = _QUOTED.findall(items_match.group(1))
    current_match = _ITEM0.search(output)
    if current_match:
        current = current_match.group(1)
    else:
        current = items[0] if items else ""
    return MixerEnum(name=name, items=items, current=current)


def _sget(card: int, control: str) -> str | None:
    try:
        return _run(["amixer", "-c", str(card), "sget", control])
    except AlsaError:
        return None


def _sset(card: int, control: str, value: str) -> None:
    _run(["amixer", "-c", str(card), "sset", control, value])


def get_capture_volume(card: int = 0) -> MixerVolume | None:
    output = _sget(card, "Capture")
    return parse_volume("Capture", output) if output is not None else None


def get_mic_boost(card: int = 0) -> MixerVolume | None:
    output = _sget(card, "Mic Boost")
    return parse_volume("Mic Boost", output) if output is not None else None


def get_input_source(card: int = 0) -> MixerEnum | None:
    output = _sget(card, "Input Source")
    return parse_enum("Input Source", output) if output is not None else None


def set_capture_volume(value: int, card: int = 0) -> None:
    _sset(card, "Capture", str(int(value)))


def set_mic_boost(value: int, card: int = 0) -> None:
    _sset(card, "Mic Boost", str(int(value)))


def set_input_source(source: str, card: int = 0) -> None:
    _sset(card, "Input Source", source)


__all__ = [
    "AlsaError",
    "CAPTURE_RANGE",
    "CaptureDevice",
    "MIC_BOOST_RANGE",
    "MixerEnum",
    "MixerVolume",
    "get_capture_volume",
    "get_input_source",
    "get_mic_boost",
    "list_capture_devices",
    "parse_capture_devices",
    "parse_enum",
    "parse_volume",
    "set_capture_volume",
    "set_input_source",
    "set_mic_boost",
]
