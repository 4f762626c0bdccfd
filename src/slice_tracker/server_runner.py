"""Serve the slice dashboard API together with its background monitor.

The monitor thread (heartbeat, idle polling and cross-process change
watching) is started by the app's startup hook, so one process both answers
the local UI and keeps the running slice honest while the user is away.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import uvicorn

from .config import RunnerSettings
from .idle import default_idle_source
from .paths import get_db_path
from .webapp import create_app

logger = logging.getLogger(__name__)


def dashboard_url(host: str, port: int) -> str:
    """Interactive API page of a dashboard bound to ``host``:``port``."""
    return f"http://{host}:{port}/docs"


def run_dashboard(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    db_path: Optional[Path] = None,
    runner_settings: Optional[RunnerSettings] = None,
    open_browser: bool = True,
    log_level: str = "info",
) -> None:
    resolved_db_path = db_path or get_db_path()
    idle_source = default_idle_source()
    app = create_app(
        db_path=resolved_db_path,
        runner_settings=runner_settings or RunnerSettings(),
        idle_source=idle_source,
    )
    logger.info(
        "Serving slices from %s (idle polling %s).",
        resolved_db_path,
        "on" if idle_source is not None else "off",
    )

    if open_browser:
        threading.Thread(
            target=_open_when_listening, args=(host, port), daemon=True
        ).start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _open_when_listening(host: str, port: int, timeout: float = 10.0) -> None:
    """Open the browser once the server accepts connections, or give up."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.5):
                break
        except OSError:
            time.sleep(0.2)
    else:
        logger.warning(
            "Dashboard did not start listening on %s:%d; not opening a browser.", host, port
        )
        return
    url = dashboard_url(host, port)
    try:
        webbrowser.open(url)
    except Exception:
        logger.exception("Failed to launch browser for %s", url)
