"""Centralised REST endpoint configuration for the factory API.

Every upstream endpoint consumed by the application is defined here under a
logical identifier so that deployments can relocate routes (for example behind
a reverse proxy prefix) without modifying application logic.  When an
identifier has no mapping the helper functions fall back to the identifier
supplied by the caller.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass(frozen=True)
class ApiEndpoint:
    """Configuration for one upstream REST endpoint."""

    path: str
    expects_success_flag: bool = True


# Default endpoint paths. These act as fallbacks if no environment overrides
# are supplied.
_DEFAULT_ENDPOINTS: Dict[str, ApiEndpoint] = {
    "floor_dashboard": ApiEndpoint(path="/api/floor-dashboard"),
    "target_headers": ApiEndpoint(path="/api/target-setter-header"),
    "style_media": ApiEndpoint(path="/api/style-media"),
    "style_wip": ApiEndpoint(path="/api/style-wip"),
    "style_capacities": ApiEndpoint(path="/api/style-capacities"),
    "hourly_productions": ApiEndpoint(path="/api/hourly-productions"),
    "hourly_inspections": ApiEndpoint(
        path="/api/hourly-inspections", expects_success_flag=False
    ),
    "floor_compare": ApiEndpoint(path="/api/floor-compare"),
    "floor_summary": ApiEndpoint(path="/api/floor-summary"),
    "media_links": ApiEndpoint(path="/api/media-links", expects_success_flag=False),
}


def _load_endpoints_from_env() -> Dict[str, ApiEndpoint]:
    """Build the endpoint map from environment overrides."""

    endpoints = dict(_DEFAULT_ENDPOINTS)

    raw = os.getenv("FLOOR_API_ENDPOINTS_JSON")
    if not raw:
        return endpoints

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return endpoints

    if not isinstance(parsed, Mapping):
        return endpoints

    for identifier, entry in parsed.items():
        if not isinstance(identifier, str):
            continue
        if isinstance(entry, str) and entry:
            default = endpoints.get(identifier)
            flag = default.expects_success_flag if default else True
            endpoints[identifier] = ApiEndpoint(path=entry, expects_success_flag=flag)
        elif isinstance(entry, Mapping):
            path = entry.get("path")
            if not isinstance(path, str) or not path:
                continue
            flag = entry.get("expects_success_flag", True)
            endpoints[identifier] = ApiEndpoint(path=path, expects_success_flag=bool(flag))

    return endpoints


API_ENDPOINTS: Dict[str, ApiEndpoint] = _load_endpoints_from_env()


def endpoint_path(identifier: str, *segments: object) -> str:
    """Return the configured path for ``identifier`` joined with ``segments``."""

    endpoint = API_ENDPOINTS.get(identifier)
    path = endpoint.path if endpoint else identifier
    for segment in segments:
        text = str(segment).strip("/")
        if text:
            path = f"{path.rstrip('/')}/{text}"
    return path


def expects_success_flag(identifier: str) -> bool:
    """Return whether responses from ``identifier`` carry a ``success`` field."""

    endpoint = API_ENDPOINTS.get(identifier)
    if endpoint:
        return endpoint.expects_success_flag
    return True
