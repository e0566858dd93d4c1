#!/usr/bin/env python3
"""
Unified configuration loader for auris.

Load order (first found wins):
  1) AURIS_CONFIG (env, absolute or relative to CWD)
  2) /etc/auris/config.yaml
  3) /opt/auris/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) <script_dir>/config.yaml (directory of the running script)
  6) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "recordings_dir": "/recordings",
        "database_path": str(Path.cwd() / "data" / "auris.db"),
    },
    "capture": {
        "unit": "auris-capture",
        "env_file": "/etc/default/auris",
        "default_device": "plughw:0,0",
        "use_sudo": True,
        "settle_seconds": 0.5,
        "finalize_seconds": 0.5,
    },
    "stream": {
        "icecast_url": "http://localhost:8000/mic",
        "source_password": "sourcepass",
        "mount_timeout_seconds": 5.0,
    },
    "waveform": {
        "sample_rate": 8000,
        "normalization": "percentile",
        "bar_count": 1600,
        "duration_scaled": False,
        "peaks_per_second": 50,
        "min_peaks": 200,
        "max_peaks": 2000,
    },
    "renderer": {
        "theme": "dark",
        "themes": {
            "dark": {
                "played": "#3b82f6",
                "unplayed": "#4b5563",
                "background": "#0a0a0a",
            },
            "light": {
                "played": "#2563eb",
                "unplayed": "#9ca3af",
                "background": "#ffffff",
            },
        },
        "time_text_interval_sec": 0.25,
        "frame_interval_sec": 1.0 / 60.0,
        "pixel_ratio": 1.0,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3075,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        logging.getLogger("auris.config").warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("AURIS_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/auris/config.yaml"),
            Path("/opt/auris/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "RECORDINGS_DIR" in os.environ:
        cfg.setdefault("paths", {})["recordings_dir"] = os.environ["RECORDINGS_DIR"]
    if "DATABASE_PATH" in os.environ:
        cfg.setdefault("paths", {})["database_path"] = os.environ["DATABASE_PATH"]
    if "PORT" in os.environ:
        try:
            cfg.setdefault("web_server", {})["listen_port"] = int(os.environ["PORT"])
        except ValueError:
            pass
    if "AURIS_CAPTURE_UNIT" in os.environ:
        value = os.environ["AURIS_CAPTURE_UNIT"].strip()
        if value:
            cfg.setdefault("capture", {})["unit"] = value
    if "AURIS_THEME" in os.environ:
        value = os.environ["AURIS_THEME"].strip().lower()
        if value:
            cfg.setdefault("renderer", {})["theme"] = value


def section(cfg: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Return a config section merged over its defaults."""
    raw = cfg.get(name) if isinstance(cfg, Mapping) else None
    defaults = copy.deepcopy(_DEFAULTS.get(name, {}))
    if isinstance(raw, dict):
        return _deep_merge(defaults, raw)
    return defaults


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # <root>/auris -> <root>
    project_root = Path(__file__).resolve().parent.parent

    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def log_level(cfg: Mapping[str, Any], requested: str | None = None) -> int:
    if section(cfg, "logging").get("dev_mode"):
        return logging.DEBUG
    if requested:
        return getattr(logging, requested.upper(), logging.INFO)
    return logging.INFO
