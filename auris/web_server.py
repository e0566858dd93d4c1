#!/usr/bin/env python3
"""
aiohttp web server for the auris monitoring dashboard.

Endpoints:
  GET    /                                       -> Dashboard HTML
  GET    /api/status                             -> {streaming, recording, recording_file}
  GET    /api/recordings                         -> JSON listing, newest first
  GET    /api/recordings/{filename}              -> audio/mpeg (byte ranges supported)
  DELETE /api/recordings/{filename}              -> Remove file and its row
  GET    /api/recordings/{filename}/waveform     -> Cached peak array (immutable with ?v=<hash>)
  GET    /api/recordings/{filename}/waveform.png -> Static waveform image
  POST   /api/record/start | /api/record/stop    -> Toggle the record flag
  POST   /api/stream/start | /api/stream/stop    -> Toggle the stream flag
  POST   /api/stream/test-tone                   -> Send a sine tone to the mount
  GET    /api/audio/devices                      -> Capture devices and selection
  POST   /api/audio/device                       -> Select capture device
  GET    /api/audio/mixer                        -> Capture / Mic Boost / Input Source
  POST   /api/audio/mixer                        -> Update mixer controls
  GET    /healthz                                -> "ok"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Mapping

from aiohttp import web
from aiohttp.web import AppKey
from sqlalchemy.exc import SQLAlchemyError

from . import alsa, db, device_config, systemctl, webui
from .config import get_cfg, log_level, reload_cfg, section
from .media import probe_duration
from .systemctl import SystemctlError
from .tone import TestToneController, TestToneError
from .waveform_cache import WaveformJobs, WaveformSettings
from .waveform_render import render_waveform_png, resolve_theme

WAVEFORM_CACHE_CONTROL = "public, max-age=31536000, immutable"
DEVICE_ID_PATTERN = re.compile(r"^plughw:\d+,\d+$")
RECORDING_SUFFIX = ".mp3"

PNG_DEFAULT_WIDTH = 800
PNG_DEFAULT_HEIGHT = 64
PNG_MAX_WIDTH = 4000
PNG_MAX_HEIGHT = 1000

RECORDINGS_ROOT_KEY: AppKey[Path] = web.AppKey("recordings_root", Path)
WAVEFORM_JOBS_KEY: AppKey[WaveformJobs] = web.AppKey("waveform_jobs", WaveformJobs)
TEST_TONE_KEY: AppKey[TestToneController] = web.AppKey("test_tone", TestToneController)
SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)

_CONTROL_ERRORS = (OSError, subprocess.CalledProcessError, SystemctlError, SQLAlchemyError)


def _error(message: str, status: int, detail: str | None = None) -> web.Response:
    payload: dict[str, str] = {"error": message}
    if detail:
        payload["detail"] = detail
    return web.json_response(payload, status=status)


def safe_recording_name(raw: str | None) -> str | None:
    """Return ``raw`` when it is a bare ``.mp3`` basename, else None."""
    if not raw or "/" in raw or "\\" in raw:
        return None
    if raw in {".", ".."} or Path(raw).name != raw:
        return None
    if not raw.endswith(RECORDING_SUFFIX):
        return None
    return raw


def newest_recording(root: Path) -> str | None:
    """Return the most recently modified ``.mp3`` in ``root``."""
    newest: tuple[float, str] | None = None
    try:
        entries = list(root.iterdir())
    except OSError:
        return None
    for entry in entries:
        if entry.suffix != RECORDING_SUFFIX:
            continue
        try:
            mtime = entry.stat().st_mtime
        except OSError:
            continue
        if newest is None or mtime > newest[0]:
            newest = (mtime, entry.name)
    return newest[1] if newest else None


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def build_app(cfg: Mapping[str, Any] | None = None) -> web.Application:
    log = logging.getLogger("auris.web")
    cfg = cfg if cfg is not None else get_cfg()

    recordings_root = Path(section(cfg, "paths")["recordings_dir"])
    capture_cfg = section(cfg, "capture")
    unit = str(capture_cfg["unit"])
    settle_seconds = max(0.0, float(capture_cfg["settle_seconds"]))
    finalize_seconds = max(0.0, float(capture_cfg["finalize_seconds"]))
    default_theme = str(section(cfg, "renderer")["theme"])

    app = web.Application()
    app[RECORDINGS_ROOT_KEY] = recordings_root
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    jobs = WaveformJobs(
        recordings_root,
        WaveformSettings.from_config(cfg),
        logger=logging.getLogger("auris.waveform"),
    )
    app[WAVEFORM_JOBS_KEY] = jobs
    tone = TestToneController(cfg, logger=log)
    app[TEST_TONE_KEY] = tone

    async def _shutdown_background(_: web.Application) -> None:
        await jobs.close()
        await tone.close()

    app.on_cleanup.append(_shutdown_background)

    # --- helpers shared by handlers ---
    def _recordings_payload_sync() -> list[dict[str, object]]:
        db.sync_existing_recordings(recordings_root)
        payload: list[dict[str, object]] = []
        for row in db.list_recordings():
            entry = row.to_dict()
            if entry["size"] is None:
                try:
                    entry["size"] = (recordings_root / row.filename).stat().st_size
                except OSError:
                    entry["size"] = 0
            payload.append(entry)
        return payload

    async def _status_payload() -> dict[str, object]:
        active = await systemctl.is_active(unit)
        mode = await asyncio.to_thread(device_config.get_capture_mode)
        streaming = active and mode.stream
        recording = active and mode.record
        recording_file = None
        if recording:
            recording_file = await asyncio.to_thread(newest_recording, recordings_root)
        return {
            "streaming": streaming,
            "recording": recording,
            "recording_file": recording_file,
        }

    async def _start_or_restart() -> None:
        if await systemctl.is_active(unit):
            await systemctl.restart_unit(unit)
        else:
            await systemctl.start_unit(unit)

    async def _restart_or_stop(keep_running: bool) -> None:
        if not await systemctl.is_active(unit):
            return
        if keep_running:
            await systemctl.restart_unit(unit)
        else:
            await systemctl.stop_unit(unit)

    async def _finalize(filename: str) -> None:
        path = recordings_root / filename
        try:
            size = path.stat().st_size
        except OSError as exc:
            log.warning("Unable to finalize %s: %s", filename, exc)
            return
        duration = await asyncio.to_thread(probe_duration, path)
        await asyncio.to_thread(db.finalize_recording, filename, size=size, duration=duration)
        jobs.schedule(filename)

    async def _json_body(request: web.Request) -> dict[str, Any] | None:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    # --- pages ---
    async def dashboard(request: web.Request) -> web.Response:
        theme = request.rel_url.query.get("theme") or default_theme
        try:
            status = await _status_payload()
            recordings = await asyncio.to_thread(_recordings_payload_sync)
        except (OSError, SQLAlchemyError) as exc:
            log.warning("Dashboard render failed: %s", exc)
            return _error("Failed to load dashboard", 500, str(exc))
        html = webui.render_template(
            "dashboard.html",
            page_title="Auris",
            theme=theme,
            status=status,
            recordings=recordings,
        )
        return web.Response(text=html, content_type="text/html")

    # --- status / recordings ---
    async def status_api(_: web.Request) -> web.Response:
        try:
            payload = await _status_payload()
        except OSError as exc:
            return _error("Failed to get status", 500, str(exc))
        return web.json_response(payload)

    async def recordings_api(_: web.Request) -> web.Response:
        try:
            payload = await asyncio.to_thread(_recordings_payload_sync)
        except (OSError, SQLAlchemyError) as exc:
            log.warning("Listing recordings failed: %s", exc)
            return _error("Failed to list recordings", 500, str(exc))
        return web.json_response(payload)

    async def recording_file(request: web.Request) -> web.StreamResponse:
        name = safe_recording_name(request.match_info.get("filename"))
        if name is None:
            return _error("Invalid filename", 400)
        path = recordings_root / name
        if not path.is_file():
            return _error("File not found", 404)
        return web.FileResponse(
            path,
            headers={
                "Content-Type": "audio/mpeg",
                "Content-Disposition": f'inline; filename="{name}"',
                "Accept-Ranges": "bytes",
            },
        )

    async def recording_delete(request: web.Request) -> web.Response:
        name = safe_recording_name(request.match_info.get("filename"))
        if name is None:
            return _error("Invalid filename", 400)
        path = recordings_root / name
        try:
            path.unlink()
        except FileNotFoundError:
            return _error("File not found", 404)
        except OSError as exc:
            return _error("Failed to delete file", 500, str(exc))
        try:
            await asyncio.to_thread(db.delete_recording, name)
        except SQLAlchemyError as exc:
            return _error("Failed to delete file", 500, str(exc))
        log.info("Deleted recording %s", name)
        return web.json_response({"ok": True})

    async def recording_waveform(request: web.Request) -> web.Response:
        name = safe_recording_name(request.match_info.get("filename"))
        if name is None:
            return _error("Invalid filename", 400)
        try:
            row = await asyncio.to_thread(db.get_recording, name)
        except SQLAlchemyError as exc:
            return _error("Failed to read waveform", 500, str(exc))
        if row is None or not row.waveform:
            return _error("No waveform", 404)
        # Only a URL pinned to the current hash may be cached forever
        versioned = bool(row.waveform_hash) and request.query.get("v") == row.waveform_hash
        return web.Response(
            text=row.waveform,
            content_type="application/json",
            headers={"Cache-Control": WAVEFORM_CACHE_CONTROL if versioned else "no-cache"},
        )

    async def recording_waveform_png(request: web.Request) -> web.Response:
        name = safe_recording_name(request.match_info.get("filename"))
        if name is None:
            return _error("Invalid filename", 400)
        query = request.rel_url.query
        try:
            width = int(query.get("width", PNG_DEFAULT_WIDTH))
            height = int(query.get("height", PNG_DEFAULT_HEIGHT))
            progress = float(query.get("progress", 0.0))
        except ValueError:
            return _error("width, height and progress must be numeric", 400)
        if not (1 <= width <= PNG_MAX_WIDTH and 1 <= height <= PNG_MAX_HEIGHT):
            return _error(f"Image size must be within {PNG_MAX_WIDTH}x{PNG_MAX_HEIGHT}", 400)
        if not math.isfinite(progress):
            return _error("progress must be finite", 400)
        try:
            colors = resolve_theme(cfg, query.get("theme"))
        except ValueError as exc:
            return _error("Invalid theme colors", 500, str(exc))

        try:
            peaks = await asyncio.to_thread(db.get_waveform_peaks, name)
        except (SQLAlchemyError, ValueError) as exc:
            return _error("Failed to read waveform", 500, str(exc))
        if not peaks:
            return _error("No waveform", 404)

        body = await asyncio.to_thread(render_waveform_png, peaks, width, height, progress, colors)
        return web.Response(body=body, content_type="image/png", headers={"Cache-Control": "no-cache"})

    # --- capture control ---
    async def record_start(_: web.Request) -> web.Response:
        try:
            device = await asyncio.to_thread(device_config.get_selected_device)
            await asyncio.to_thread(device_config.set_capture_mode, record=True)
            await _start_or_restart()
            await asyncio.sleep(settle_seconds)
            filename = await asyncio.to_thread(newest_recording, recordings_root)
            if filename:
                await asyncio.to_thread(db.insert_recording, filename, device=device)
        except _CONTROL_ERRORS as exc:
            log.warning("Failed to start recording: %s", exc)
            return _error("Failed to start recording", 500, str(exc))
        log.info("Recording started (%s)", filename or "file pending")
        return web.json_response({"ok": True, "filename": filename})

    async def record_stop(_: web.Request) -> web.Response:
        try:
            active_row = await asyncio.to_thread(db.active_recording)
            mode = await asyncio.to_thread(device_config.get_capture_mode)
            await asyncio.to_thread(device_config.set_capture_mode, record=False)
            await _restart_or_stop(keep_running=mode.stream)
            if active_row is not None:
                await asyncio.sleep(finalize_seconds)
                await _finalize(active_row.filename)
        except _CONTROL_ERRORS as exc:
            log.warning("Failed to stop recording: %s", exc)
            return _error("Failed to stop recording", 500, str(exc))
        log.info("Recording stopped")
        return web.json_response({"ok": True})

    async def stream_start(_: web.Request) -> web.Response:
        try:
            await asyncio.to_thread(device_config.set_capture_mode, stream=True)
            await _start_or_restart()
        except _CONTROL_ERRORS as exc:
            log.warning("Failed to start stream: %s", exc)
            return _error("Failed to start stream", 500, str(exc))
        log.info("Stream started")
        return web.json_response({"ok": True})

    async def stream_stop(_: web.Request) -> web.Response:
        try:
            mode = await asyncio.to_thread(device_config.get_capture_mode)
            await asyncio.to_thread(device_config.set_capture_mode, stream=False)
            await _restart_or_stop(keep_running=mode.record)
        except _CONTROL_ERRORS as exc:
            log.warning("Failed to stop stream: %s", exc)
            return _error("Failed to stop stream", 500, str(exc))
        log.info("Stream stopped")
        return web.json_response({"ok": True})

    async def stream_test_tone(_: web.Request) -> web.Response:
        try:
            await tone.start()
        except TestToneError as exc:
            return _error(str(exc), exc.status)
        return web.json_response({"ok": True})

    # --- audio devices / mixer ---
    async def audio_devices(_: web.Request) -> web.Response:
        devices = await asyncio.to_thread(alsa.list_capture_devices)
        selected = await asyncio.to_thread(device_config.get_selected_device)
        return web.json_response(
            {"devices": [device.to_dict() for device in devices], "selected": selected}
        )

    async def audio_device_select(request: web.Request) -> web.Response:
        payload = await _json_body(request)
        alsa_id = payload.get("alsaId") if payload is not None else None
        if not alsa_id or not isinstance(alsa_id, str):
            return _error("Missing alsaId", 400)
        if not DEVICE_ID_PATTERN.match(alsa_id):
            return _error("Invalid device format", 400)
        try:
            await asyncio.to_thread(device_config.set_selected_device, alsa_id)
            if await systemctl.is_active(unit):
                await systemctl.restart_unit(unit)
        except _CONTROL_ERRORS as exc:
            return _error("Failed to set device", 500, str(exc))
        log.info("Capture device set to %s", alsa_id)
        return web.json_response({"ok": True, "device": alsa_id})

    async def _selected_card() -> int:
        selected = await asyncio.to_thread(device_config.get_selected_device)
        return device_config.card_from_device(selected)

    async def audio_mixer_get(_: web.Request) -> web.Response:
        card = await _selected_card()
        capture, mic_boost, input_source = await asyncio.gather(
            asyncio.to_thread(alsa.get_capture_volume, card),
            asyncio.to_thread(alsa.get_mic_boost, card),
            asyncio.to_thread(alsa.get_input_source, card),
        )
        return web.json_response(
            {
                "capture": capture.to_dict() if capture else None,
                "micBoost": mic_boost.to_dict() if mic_boost else None,
                "inputSource": input_source.to_dict() if input_source else None,
            }
        )

    async def audio_mixer_set(request: web.Request) -> web.Response:
        payload = await _json_body(request)
        if payload is None:
            return _error("Invalid JSON body", 400)

        capture = mic_boost = None
        if payload.get("capture") is not None:
            capture = _parse_number(payload["capture"])
            low, high = alsa.CAPTURE_RANGE
            if capture is None or not low <= capture <= high:
                return _error(f"Capture must be {low}-{high}", 400)
        if payload.get("micBoost") is not None:
            mic_boost = _parse_number(payload["micBoost"])
            low, high = alsa.MIC_BOOST_RANGE
            if mic_boost is None or not low <= mic_boost <= high:
                return _error(f"Mic Boost must be {low}-{high}", 400)
        input_source = payload.get("inputSource")

        card = await _selected_card()
        updated: list[str] = []
        try:
            if capture is not None:
                await asyncio.to_thread(alsa.set_capture_volume, int(capture), card)
                updated.append("capture")
            if mic_boost is not None:
                await asyncio.to_thread(alsa.set_mic_boost, int(mic_boost), card)
                updated.append("micBoost")
            if input_source is not None:
                await asyncio.to_thread(alsa.set_input_source, str(input_source), card)
                updated.append("inputSource")
        except alsa.AlsaError as exc:
            return _error("Failed to set mixer", 500, str(exc))
        return web.json_response({"ok": True, "updated": updated})

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    # Routes
    app.router.add_get("/", dashboard)
    app.router.add_get("/api/status", status_api)
    app.router.add_get("/api/recordings", recordings_api)
    app.router.add_get("/api/recordings/{filename}/waveform", recording_waveform)
    app.router.add_get("/api/recordings/{filename}/waveform.png", recording_waveform_png)
    app.router.add_get("/api/recordings/{filename}", recording_file)
    app.router.add_delete("/api/recordings/{filename}", recording_delete)
    app.router.add_post("/api/record/start", record_start)
    app.router.add_post("/api/record/stop", record_stop)
    app.router.add_post("/api/stream/start", stream_start)
    app.router.add_post("/api/stream/stop", stream_stop)
    app.router.add_post("/api/stream/test-tone", stream_test_tone)
    app.router.add_get("/api/audio/devices", audio_devices)
    app.router.add_post("/api/audio/device", audio_device_select)
    app.router.add_get("/api/audio/mixer", audio_mixer_get)
    app.router.add_post("/api/audio/mixer", audio_mixer_set)
    app.router.add_get("/healthz", healthz)
    app.router.add_static("/static/", webui.static_directory(), show_index=False)

    return app


class WebServerHandle:
    """Handle returned by start_web_server_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0) -> None:
        log = logging.getLogger("auris.web")
        log.info("Stopping web server ...")
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.app[SHUTDOWN_EVENT_KEY].set)

            async def _cleanup() -> None:
                await self.runner.cleanup()

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:  # noqa: BLE001 - shutdown best effort
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web server stopped")


def start_web_server_in_thread(
    host: str = "0.0.0.0",
    port: int = 3075,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
) -> WebServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log = logging.getLogger("auris.web")

    loop = asyncio.new_event_loop()
    runner_box: dict[str, web.AppRunner] = {}
    app_box: dict[str, web.Application] = {}
    ready = threading.Event()

    def _run() -> None:
        asyncio.set_event_loop(loop)
        try:
            app = build_app()
            runner = web.AppRunner(app, access_log=log if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        finally:
            ready.set()
        runner_box["runner"] = runner
        app_box["app"] = app
        log.info("web server started on %s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            # stop() may already have cleaned up the runner
            if runner.server is not None:
                loop.run_until_complete(runner.cleanup())
            loop.close()

    t = threading.Thread(target=_run, name="auris_web", daemon=True)
    t.start()

    while "runner" not in runner_box:
        if ready.is_set() and not t.is_alive():
            raise RuntimeError("web server failed to start")
        time.sleep(0.05)

    return WebServerHandle(t, loop, runner_box["runner"], app_box["app"])


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Auris monitoring dashboard.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level = log_level(cfg, args.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log = logging.getLogger("auris.web")

    server_cfg = section(cfg, "web_server")
    bind_host = args.host if args.host else str(server_cfg["listen_host"])
    bind_port = args.port if args.port else int(server_cfg["listen_port"])
    log.info(
        "Starting web server on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    try:
        db.init_db()
    except (OSError, SQLAlchemyError) as exc:
        log.error("Unable to open database: %s", exc)
        return 1

    handle = start_web_server_in_thread(
        host=bind_host,
        port=bind_port,
        access_log=args.access_log,
        log_level=logging.getLevelName(level),
    )
    try:
        while handle.thread.is_alive():
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
