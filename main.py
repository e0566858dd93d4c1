#!/usr/bin/env python3
"""
Development launcher for auris.

- Backfills missing waveform peaks before serving
- Runs the dashboard web server in a background thread
- Ctrl-C exits cleanly
- Ctrl-R reloads config and restarts the web server
"""

import os
import signal
import sys
import termios
import threading
import time
import tty
from pathlib import Path

from auris import db
from auris.config import reload_cfg, section
from auris.waveform_cache import WaveformSettings, backfill_missing_waveforms
from auris.web_server import WebServerHandle, start_web_server_in_thread


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = False

    def run(self):
        try:
            while True:
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    os.kill(os.getpid(), signal.SIGINT)
                elif ch == b"\x12":  # Ctrl-R
                    self.restart_requested = True
                    os.kill(os.getpid(), signal.SIGINT)
        finally:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def _start_dev_web_server() -> WebServerHandle:
    """Reload config, backfill waveforms and start the dashboard."""

    cfg = reload_cfg()
    db.reset_db()
    recordings_dir = Path(section(cfg, "paths")["recordings_dir"])
    if recordings_dir.is_dir():
        summary = backfill_missing_waveforms(recordings_dir, settings=WaveformSettings.from_config(cfg))
        print(
            f"[dev] Waveforms generated: {len(summary.generated)}, failed: {len(summary.failed)}",
            flush=True,
        )
    server_cfg = section(cfg, "web_server")
    return start_web_server_in_thread(
        host=str(server_cfg["listen_host"]),
        port=int(server_cfg["listen_port"]),
        access_log=False,
        log_level="DEBUG" if section(cfg, "logging").get("dev_mode") else "INFO",
    )


def main():
    print("[dev] Running auris dashboard (Ctrl-C to exit, Ctrl-R to restart)")

    while True:
        web_server = _start_dev_web_server()
        watcher = KeyWatcher()
        watcher.start()
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            pass
        finally:
            print("[dev] Stopping web server ...")
            web_server.stop()
            # Always restore terminal mode after services are down
            termios.tcsetattr(watcher.fd, termios.TCSADRAIN, watcher.old_settings)

        if watcher.restart_requested:
            print("[dev] Restart requested via Ctrl-R")
            continue
        print("[dev] Exiting dev mode")
        return 0


if __name__ == "__main__":
    sys.exit(main())
