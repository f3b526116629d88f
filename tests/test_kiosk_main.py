import sys
from pathlib import Path

import pytest
import requests
from flask import Flask

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

pytest.importorskip('webview')

import kiosk_main  # noqa: E402


def test_kiosk_url_defaults_to_tv_dashboard():
    assert kiosk_main.kiosk_url('127.0.0.1', 5000, environ={}) == 'http://127.0.0.1:5000/floor-dashboard/tv'


def test_kiosk_url_applies_filters():
    url = kiosk_main.kiosk_url(
        '127.0.0.1', 5000, environ={'KIOSK_FACTORY': 'K-2', 'KIOSK_BUILDING': 'A-2', 'KIOSK_LINE': ''}
    )
    assert url == 'http://127.0.0.1:5000/floor-dashboard/tv?factory=K-2&building=A-2'


class RecordingPollers:
    def __init__(self):
        self.shutdowns = 0

    def shutdown(self):
        self.shutdowns += 1


def test_kiosk_server_serves_and_stops_pollers_once():
    app = Flask(__name__)
    app.config['POLLERS'] = RecordingPollers()

    @app.route('/ping')
    def ping():
        return 'pong'

    server = kiosk_main.KioskServer(app).start()
    assert server.port > 0
    try:
        response = requests.get(f'http://{server.host}:{server.port}/ping', timeout=5)
        assert response.text == 'pong'
    finally:
        server.stop()
        server.stop()
    assert app.config['POLLERS'].shutdowns == 1
