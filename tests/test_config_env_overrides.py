"""Tests covering config file discovery and environment variable overrides."""

from __future__ import annotations

import logging
from pathlib import Path

from auris import config as config_module

_ENV_KEYS = ("DEV", "RECORDINGS_DIR", "DATABASE_PATH", "PORT", "AURIS_CAPTURE_UNIT", "AURIS_THEME")


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


def _clear_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_config_file_values_and_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("paths:\n  recordings_dir: /srv/rec\nwaveform:\n  normalization: max\n")

    _clear_env(monkeypatch)
    monkeypatch.setenv("AURIS_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["paths"]["recordings_dir"] == "/srv/rec"
    assert cfg["waveform"]["normalization"] == "max"
    assert cfg["waveform"]["bar_count"] == 1600
    assert config_module.active_config_path() == config_path.resolve()
    assert config_path.resolve() in config_module.search_paths()


def test_env_overrides_take_precedence(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "paths:\n  recordings_dir: /srv/rec\nweb_server:\n  listen_port: 9000\n"
        "capture:\n  unit: file-unit\n"
    )

    _clear_env(monkeypatch)
    monkeypatch.setenv("AURIS_CONFIG", str(config_path))
    monkeypatch.setenv("RECORDINGS_DIR", str(tmp_path / "override"))
    monkeypatch.setenv("PORT", "4000")
    monkeypatch.setenv("AURIS_CAPTURE_UNIT", "env-unit")
    monkeypatch.setenv("AURIS_THEME", "Light")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["paths"]["recordings_dir"] == str(tmp_path / "override")
    assert cfg["web_server"]["listen_port"] == 4000
    assert cfg["capture"]["unit"] == "env-unit"
    assert cfg["renderer"]["theme"] == "light"


def test_invalid_port_override_is_ignored(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("web_server:\n  listen_port: 9000\n")

    _clear_env(monkeypatch)
    monkeypatch.setenv("AURIS_CONFIG", str(config_path))
    monkeypatch.setenv("PORT", "not-a-port")
    _reset_config_state(monkeypatch)

    assert config_module.get_cfg()["web_server"]["listen_port"] == 9000


def test_unreadable_config_falls_back_to_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("paths: [unclosed\n")

    _clear_env(monkeypatch)
    monkeypatch.setenv("AURIS_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["paths"]["recordings_dir"] == "/recordings"
    assert cfg["capture"]["unit"] == "auris-capture"


def test_dev_mode_selects_debug_level(monkeypatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AURIS_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DEV", "1")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert config_module.log_level(cfg, "WARNING") == logging.DEBUG
    assert config_module.log_level({}, "warning") == logging.WARNING
    assert config_module.log_level({}) == logging.INFO


def test_section_merges_partial_values_over_defaults() -> None:
    merged = config_module.section({"renderer": {"themes": {"dark": {"played": "#ff0000"}}}}, "renderer")

    assert merged["themes"]["dark"]["played"] == "#ff0000"
    assert merged["themes"]["dark"]["background"] == "#0a0a0a"
    assert merged["themes"]["light"]["background"] == "#ffffff"
    assert merged["frame_interval_sec"] > 0
