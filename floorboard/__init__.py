import os
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Flask, current_app, session

from config.reference_data import ReferenceData, get_reference_data, load_reference_data

from .floor_api import FloorApiClient
from .forms import Supervisor
from .poller import PollerRegistry


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def create_app():
    app = Flask(
        __name__,
        template_folder="../templates",
        static_folder="../static",
    )
    app.secret_key = os.environ["SECRET_KEY"]

    base_url = os.environ.get("FLOOR_API_BASE_URL") or "http://localhost:3000"
    client = FloorApiClient(base_url, timeout=_env_float("FLOOR_API_TIMEOUT", 30))
    app.config["FLOOR_API"] = client
    app.config["FLOOR_API_BASE_URL"] = base_url

    options_file = os.environ.get("FLOOR_OPTIONS_FILE")
    app.config["REFERENCE"] = (
        load_reference_data(options_file) if options_file else get_reference_data()
    )

    app.config["POLLERS"] = PollerRegistry(
        client,
        idle_seconds=_env_float("FLOOR_POLLER_IDLE_SECONDS", 60),
        reap_seconds=_env_float("FLOOR_POLLER_REAP_SECONDS", 300),
        wip_concurrency=int(_env_float("FLOOR_WIP_CONCURRENCY", 5)) or 5,
        max_pollers=int(_env_float("FLOOR_MAX_POLLERS", 32)),
    )
    app.config["TOAST_SECONDS"] = _env_float("TOAST_SECONDS", 4)

    from .entry.routes import entry_bp
    from .main.routes import main_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(entry_bp)

    @app.context_processor
    def inject_supervisor_context():
        supervisor = current_supervisor()
        return {
            "supervisor": supervisor,
            "user_name": supervisor.user_name,
            "reference": get_reference(),
            "toast_seconds": current_app.config["TOAST_SECONDS"],
        }

    return app


def get_api_client() -> FloorApiClient:
    return current_app.config["FLOOR_API"]


def get_pollers() -> PollerRegistry:
    return current_app.config["POLLERS"]


def get_reference() -> ReferenceData:
    return current_app.config["REFERENCE"]


def current_supervisor() -> Supervisor:
    """Identity stored by the sign-in service, with reference defaults."""

    reference = get_reference()
    return Supervisor(
        user_id=str(session.get("user_id") or ""),
        user_name=session.get("user_name") or "",
        factory=session.get("factory") or reference.default_factory,
        building=session.get("assigned_building") or reference.default_building,
        role=session.get("role") or "",
        phone=session.get("phone") or "",
    )


def local_today() -> str:
    """Today's date (``YYYY-MM-DD``) in the factory's timezone."""

    try:
        tz = ZoneInfo(get_reference().timezone)
    except ZoneInfoNotFoundError:
        current_app.logger.warning(
            "Timezone %s unavailable; falling back to UTC", get_reference().timezone
        )
        tz = timezone.utc
    return datetime.now(tz).date().isoformat()
