#!/usr/bin/env python3
"""Dropzone Uploader Launcher.

Starts gunicorn serving the dropzone API and waits for it to report healthy.
"""

import os
import shutil
import signal
import socket
import subprocess
import sys
import time

import httpx

# ── Configuration ────────────────────────────────────────────
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
HOST = os.environ.get("DROPZONE_HOST", "127.0.0.1")
PORT = int(os.environ.get("DROPZONE_PORT", "5000"))
HEALTH_URL = f"http://{HOST}:{PORT}/health"
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")
GUNICORN_CONFIG = "python:dropzone.gunicorn_conf"

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[DROPZONE] {msg}", flush=True)


def port_in_use(port: int, host: str = HOST) -> bool:
    """Check if a port is already in use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((host, port)) == 0


def wait_for_server(url: str = HEALTH_URL, timeout: float = 15) -> bool:
    """Poll the health URL until the server responds or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            if httpx.get(url, timeout=1).status_code == 200:
                return True
        except httpx.TransportError:
            pass
        # Check if gunicorn died
        if gunicorn_proc and gunicorn_proc.poll() is not None:
            return False
        time.sleep(0.5)
    return False


def gunicorn_command(gunicorn_bin: str) -> list[str]:
    """Build the gunicorn command line.

    The file manager lives in process memory, so exactly one worker serves
    every request; threads keep the SSE stream from blocking other calls.
    """
    return [
        gunicorn_bin,
        "--bind",
        f"{HOST}:{PORT}",
        "--workers",
        "1",
        "--threads",
        "8",
        "--timeout",
        "0",
        "--pid",
        PID_FILE,
        "--access-logfile",
        "-",
        "--error-logfile",
        "-",
        "--config",
        GUNICORN_CONFIG,
        "dropzone:create_app()",
    ]


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Gracefully stop gunicorn."""
    print()
    log("Shutting down...")
    if gunicorn_proc and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    log("Stopped.")
    sys.exit(0)


def main() -> None:
    global gunicorn_proc

    # ── Preflight checks ─────────────────────────────────────
    gunicorn_bin = shutil.which("gunicorn")
    if gunicorn_bin is None:
        log("gunicorn not found. Install it with:")
        log("  pip install -e '.[serve]'")
        sys.exit(1)

    if port_in_use(PORT):
        log(f"Port {PORT} is already in use.")
        sys.exit(1)

    # ── Register signal handlers ─────────────────────────────
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # ── Start gunicorn ───────────────────────────────────────
    log(f"Starting Dropzone Uploader (gunicorn on {HOST}:{PORT})...")
    gunicorn_proc = subprocess.Popen(gunicorn_command(gunicorn_bin), cwd=PROJECT_DIR)

    log("Waiting for server...")
    if not wait_for_server():
        log("Server did not start. Check output above.")
        if gunicorn_proc.poll() is None:
            gunicorn_proc.terminate()
        sys.exit(1)

    log(f"Dropzone Uploader is running at: http://{HOST}:{PORT}/api/files")
    log("Press Ctrl+C to stop the server.")

    # ── Block until gunicorn exits ───────────────────────────
    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
