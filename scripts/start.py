#!/usr/bin/env python3
"""
Production startup script.

1. Runs migrations (release.py)
2. Starts gunicorn (replaces this process via os.execvp)

Usage:
    python scripts/start.py

Binds to PORT when set (container platforms), otherwise to ADDR (default ":8080").
Workers are threaded so long-lived SSE streams do not tie up a whole process.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def bind_address() -> str:
    port = os.environ.get("PORT", "").strip()
    if port:
        host = "0.0.0.0"
    else:
        host, _, port = (os.environ.get("ADDR", "").strip() or ":8080").rpartition(":")
        host = host or "0.0.0.0"

    try:
        port_int = int(port)
        if port_int < 1 or port_int > 65535:
            raise ValueError("Port out of range")
    except ValueError:
        print(f"ERROR: Invalid port value '{port}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)
    return f"{host}:{port_int}"


def main() -> None:
    bind = bind_address()
    print(f"bind={bind} validated", flush=True)

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print("=== Starting gunicorn ===", flush=True)
    print(f"Gunicorn binding to {bind}", flush=True)

    # exec so gunicorn becomes PID 1 and receives SIGTERM for graceful shutdown
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", bind,
            "--workers", os.environ.get("WEB_CONCURRENCY", "2"),
            "--worker-class", "gthread",
            "--threads", os.environ.get("GUNICORN_THREADS", "16"),
            "--timeout", "60",
            "--graceful-timeout", "10",
            "--preload",
            # the app writes its own access log (app.portal.access)
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
