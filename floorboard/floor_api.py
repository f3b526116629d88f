"""HTTP access to the factory REST API.

``FloorApiClient`` wraps a ``requests.Session`` and raises the errors defined
in :mod:`floorboard.exceptions`.  The module-level ``fetch_*`` helpers are
meant for request handlers: they use the client stored on the Flask app and
return ``(data, error)`` tuples instead of raising.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Tuple

import requests
from flask import current_app

from config.api_endpoints import endpoint_path, expects_success_flag

from .concurrency import CancelToken
from .exceptions import (
    ApiResponseError,
    FloorApiError,
    InvalidResponseError,
    RequestCancelled,
)

logger = logging.getLogger(__name__)

RAW_EXCERPT_LENGTH = 100


def _clean_params(params: Mapping[str, Any] | None) -> dict:
    if not params:
        return {}
    return {key: value for key, value in params.items() if value not in (None, "")}


def _first_list(body: Mapping[str, Any], *names: str) -> list:
    for name in names:
        value = body.get(name)
        if isinstance(value, list):
            return value
    return []


def error_message(body: Any, raw_text: str, fallback: str) -> str:
    """Pick the most useful message from an error response."""

    if isinstance(body, Mapping):
        for field in ("message", "error"):
            value = body.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(item) for item in errors)
    text = (raw_text or "").strip()
    if text and not text.startswith("{"):
        return text[:200]
    return fallback


class FloorApiClient:
    """Thin client for the factory REST endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float | None = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or None
        self.session = session or requests.Session()

    def url_for(self, identifier: str, *segments: object) -> str:
        return f"{self.base_url}{endpoint_path(identifier, *segments)}"

    def request(
        self,
        method: str,
        identifier: str,
        *segments: object,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        token: CancelToken | None = None,
        fallback: str = "Request failed",
        strict_json: bool = False,
        expect_success: bool | None = None,
    ) -> dict:
        """Send one request and return the decoded JSON body.

        ``strict_json`` turns an unparseable body into
        :class:`InvalidResponseError` even when the status is 2xx.
        """

        if token is not None:
            token.raise_if_cancelled()

        url = self.url_for(identifier, *segments)
        try:
            response = self.session.request(
                method,
                url,
                params=_clean_params(params),
                json=json,
                data=data,
                files=files,
                timeout=self.timeout,
                headers={"Cache-Control": "no-store"},
            )
        except requests.RequestException as exc:
            if token is not None and token.cancelled:
                raise RequestCancelled() from exc
            logger.warning("%s %s failed: %s", method, url, exc)
            raise FloorApiError(fallback) from exc

        # Responses that arrive after cancellation are discarded.
        if token is not None:
            token.raise_if_cancelled()

        raw_text = response.text or ""
        try:
            body = response.json() if raw_text.strip() else {}
        except ValueError:
            if strict_json:
                raise InvalidResponseError(
                    f"Invalid response from server: {raw_text[:RAW_EXCERPT_LENGTH]}",
                    status=response.status_code,
                )
            body = None

        # Fallbacks may carry a ``{status}`` placeholder.
        fallback = fallback.replace("{status}", str(response.status_code))
        if not response.ok:
            raise ApiResponseError(
                error_message(body, raw_text, fallback), status=response.status_code
            )
        if body is None:
            raise ApiResponseError(fallback, status=response.status_code)

        if expect_success is None:
            expect_success = expects_success_flag(identifier)
        if expect_success and isinstance(body, Mapping) and not body.get("success"):
            raise ApiResponseError(
                error_message(body, "", fallback), status=response.status_code
            )
        return body if isinstance(body, dict) else {"data": body}

    # -- typed reads -----------------------------------------------------

    def fetch_dashboard_segments(
        self, factory, building, date, line=None, token: CancelToken | None = None
    ) -> list:
        params = {"factory": factory, "assigned_building": building, "date": date}
        if line and line != "ALL":
            params["line"] = line
        body = self.request(
            "GET",
            "floor_dashboard",
            params=params,
            token=token,
            fallback="Failed to load dashboard",
        )
        return _first_list(body, "data", "lines")

    def fetch_target_headers(
        self, factory, building, date, line=None, token: CancelToken | None = None
    ) -> list:
        params = {"factory": factory, "assigned_building": building, "date": date}
        if line and line != "ALL":
            params["line"] = line
        body = self.request(
            "GET",
            "target_headers",
            params=params,
            token=token,
            fallback="Failed to load target headers",
        )
        return _first_list(body, "data", "headers", "items")

    def fetch_style_media(self, factory, building, date=None, token: CancelToken | None = None) -> list:
        body = self.request(
            "GET",
            "style_media",
            params={"factory": factory, "assigned_building": building, "date": date},
            token=token,
            fallback="Failed to load style media",
        )
        return _first_list(body, "data")

    def fetch_style_wip(
        self, factory, building, line, buyer, style, date, token: CancelToken | None = None
    ) -> dict | None:
        body = self.request(
            "GET",
            "style_wip",
            params={
                "factory": factory,
                "assigned_building": building,
                "line": line,
                "buyer": buyer,
                "style": style,
                "date": date,
            },
            token=token,
            fallback="Failed to load WIP",
        )
        return body.get("data")

    def fetch_hourly_productions(
        self,
        header_id=None,
        building=None,
        line=None,
        date=None,
        factory=None,
        production_user_id=None,
        token: CancelToken | None = None,
    ) -> list:
        if header_id:
            params = {"headerId": header_id, "productionUserId": production_user_id}
        else:
            params = {
                "assigned_building": building,
                "line": line,
                "date": date,
                "factory": factory,
            }
        body = self.request(
            "GET",
            "hourly_productions",
            params=params,
            token=token,
            fallback="Failed to load hourly records",
        )
        return _first_list(body, "data")

    def fetch_hourly_inspections(
        self, date, user_id=None, building=None, factory=None, limit=500
    ) -> list:
        body = self.request(
            "GET",
            "hourly_inspections",
            params={
                "date": date,
                "userId": user_id,
                "building": building,
                "factory": factory,
                "limit": limit,
            },
            fallback="Failed to load data",
        )
        return _first_list(body, "data")

    def fetch_floor_summary(self, factory, date, building=None) -> dict:
        return self.request(
            "GET",
            "floor_summary",
            params={"factory": factory, "date": date, "building": building},
            fallback="Failed to load summary",
        )

    def fetch_floor_compare(
        self, factory, date_from, date_to, group_by="segment", line="ALL", building=None,
        token: CancelToken | None = None,
    ) -> dict:
        return self.request(
            "GET",
            "floor_compare",
            params={
                "factory": factory,
                "from": date_from,
                "to": date_to,
                "groupBy": group_by,
                "line": line,
                "building": building,
            },
            token=token,
            fallback="Failed to load compare data",
        )

    def fetch_style_capacity(self, building, line, buyer, style) -> dict | None:
        body = self.request(
            "GET",
            "style_capacities",
            params={
                "assigned_building": building,
                "line": line,
                "buyer": buyer,
                "style": style,
            },
            fallback="Failed to load capacity",
        )
        records = _first_list(body, "data")
        return records[0] if records else None

    def save_style_capacity(self, payload: Mapping[str, Any]) -> dict | None:
        body = self.request(
            "POST",
            "style_capacities",
            json=dict(payload),
            fallback="Failed to save capacity.",
            strict_json=True,
        )
        return body.get("data")

    def fetch_media_link(self, user_id) -> dict | None:
        body = self.request(
            "GET",
            "media_links",
            params={"userId": user_id},
            fallback="Failed to load media links",
        )
        return body.get("data") or None


def _get_client() -> FloorApiClient:
    """Return the configured API client."""
    return current_app.config["FLOOR_API"]


def _call(method_name: str, *args, **kwargs) -> Tuple[Any, str | None]:
    try:
        return getattr(_get_client(), method_name)(*args, **kwargs), None
    except FloorApiError as exc:
        current_app.logger.warning("%s failed: %s", method_name, exc)
        return None, str(exc)


def fetch_floor_summary(factory, date, building=None):
    return _call("fetch_floor_summary", factory, date, building=building)


def fetch_floor_compare(factory, date_from, date_to, group_by="segment", line="ALL", building=None):
    return _call(
        "fetch_floor_compare",
        factory,
        date_from,
        date_to,
        group_by=group_by,
        line=line,
        building=building,
    )


def fetch_target_headers(factory, building, date, line=None):
    return _call("fetch_target_headers", factory, building, date, line=line)


def fetch_hourly_inspections(date, user_id=None, building=None, factory=None, limit=500):
    return _call(
        "fetch_hourly_inspections",
        date,
        user_id=user_id,
        building=building,
        factory=factory,
        limit=limit,
    )


def fetch_hourly_productions(**kwargs):
    return _call("fetch_hourly_productions", **kwargs)


def fetch_style_media(factory, building, date=None):
    return _call("fetch_style_media", factory, building, date=date)


def fetch_style_wip(factory, building, line, buyer, style, date):
    return _call("fetch_style_wip", factory, building, line, buyer, style, date)


def fetch_style_capacity(building, line, buyer, style):
    return _call("fetch_style_capacity", building, line, buyer, style)


def save_style_capacity(payload):
    return _call("save_style_capacity", payload)


def fetch_media_link(user_id):
    return _call("fetch_media_link", user_id)
