"""Jinja2 templates and static assets for the dashboard page."""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from typing import Any

from jinja2 import Environment, PackageLoader, select_autoescape

from ..waveform_render import format_time

__all__ = [
    "render_template",
    "static_directory",
    "static_url",
]


def static_url(path: str) -> str:
    """Return the URL for a static asset served by the web UI."""
    cleaned = path.lstrip("/")
    return f"/static/{cleaned}" if cleaned else "/static"


def _format_size(size: Any) -> str:
    try:
        value = float(size or 0)
    except (TypeError, ValueError):
        return "0 B"
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("auris.webui", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    env.globals["static_url"] = static_url
    env.filters["duration"] = lambda seconds: format_time(seconds) if seconds is not None else "--:--"
    env.filters["filesize"] = _format_size
    return env


def render_template(name: str, **context: Any) -> str:
    template = _environment().get_template(name)
    return template.render(**context)


def static_directory() -> str:
    directory = resources.files("auris.webui").joinpath("static")
    return os.fspath(directory)
