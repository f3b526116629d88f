"""Full-screen TV kiosk for the floor dashboard using pywebview."""

from __future__ import annotations

import os
import threading
from contextlib import suppress
from urllib.parse import urlencode

from dotenv import load_dotenv
from werkzeug.serving import make_server

import webview

from floorboard import create_app


class KioskServer:
    """Serves the app on an OS-assigned local port in a daemon thread."""

    def __init__(self, app, host: str = "127.0.0.1") -> None:
        self.app = app
        self.host = host
        # The socket is bound and listening once make_server returns.
        self._server = make_server(host, 0, app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="kiosk-server", daemon=True
        )
        self._stopped = threading.Event()

    @property
    def port(self) -> int:
        return self._server.server_port

    def start(self) -> "KioskServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        pollers = self.app.config.get("POLLERS")
        if pollers is not None:
            pollers.shutdown()
        if self._thread.is_alive():
            self._server.shutdown()
            self._thread.join(timeout=2.0)
        with suppress(OSError):
            self._server.server_close()


def kiosk_url(host: str, port: int, environ=None) -> str:
    """URL of the TV dashboard, pre-filtered from ``KIOSK_*`` variables."""

    environ = os.environ if environ is None else environ
    params = {
        name: environ[f"KIOSK_{name.upper()}"]
        for name in ("factory", "building", "line")
        if environ.get(f"KIOSK_{name.upper()}")
    }
    url = f"http://{host}:{port}/floor-dashboard/tv"
    return f"{url}?{urlencode(params)}" if params else url


def run_kiosk() -> None:
    load_dotenv()

    server = KioskServer(create_app()).start()
    window = webview.create_window(
        "Floor Dashboard",
        kiosk_url(server.host, server.port),
        fullscreen=True,
    )
    window.events.closed += server.stop

    try:
        webview.start()
    finally:
        server.stop()


if __name__ == "__main__":
    run_kiosk()
