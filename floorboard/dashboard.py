"""View models for the floor dashboards and the summary and compare pages."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from hour_utils import hour_label

from .keys import color_model_of, header_id, make_style_media_key, segment_key_of
from .metrics import (
    aggregate_production,
    aggregate_quality,
    clamp_percent,
    format_number,
    kpi_tone,
    label_order_index,
    round_half_up,
    to_number,
)


def _first(record: Mapping[str, Any] | None, *fields: str, default: Any = None) -> Any:
    if not record:
        return default
    for name in fields:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return default


def media_key_for(row: Mapping[str, Any], header: Mapping[str, Any] | None, factory, building) -> str:
    return make_style_media_key(
        factory,
        building,
        _first(header, "buyer") or row.get("buyer"),
        _first(header, "style") or row.get("style"),
        color_model_of(header, row),
    )


def build_card(row, header=None, media=None, wip=None, factory="", building="") -> dict:
    """Merge one segment with its header, style media and WIP snapshot."""

    row = row or {}
    quality = row.get("quality") or {}
    production = row.get("production") or {}

    target = to_number(production.get("targetQty"), 0.0)
    achieved = to_number(production.get("achievedQty"), 0.0)
    plan = clamp_percent(achieved / target * 100.0 if target > 0 else 0)
    variance = to_number(production.get("varianceQty"), 0.0)
    hourly_eff = clamp_percent(
        _first(production, "hourlyEfficiency", "currentHourEfficiency", default=0)
    )
    avg_eff = clamp_percent(
        _first(production, "avgEfficiency", "avgEffPercent", "totalEfficiency", default=0)
    )
    rft = clamp_percent(quality.get("rftPercent", 0))
    dhu = clamp_percent(quality.get("dhuPercent", 0))
    defect_rate = clamp_percent(quality.get("defectRatePercent", 0))

    run_day = (header or {}).get("run_day")
    if run_day is None:
        run_day = (header or {}).get("runDay")

    return {
        "key": segment_key_of(row),
        "headerId": header_id(header),
        "line": row.get("line") or "-",
        "buyer": _first(header, "buyer") or row.get("buyer") or "-",
        "style": _first(header, "style") or row.get("style") or "-",
        "colorModel": color_model_of(header) or "-",
        "item": _first(header, "Item") or row.get("Item") or "-",
        "runDay": run_day if run_day is not None else "-",
        "smv": (header or {}).get("smv", "-"),
        "imageSrc": _first(media, "imageSrc", "image", "img", default=""),
        "videoSrc": _first(media, "videoSrc", "video", "vid", default=""),
        "targetQty": target,
        "achievedQty": achieved,
        "varianceQty": variance,
        "varianceTone": "good" if variance >= 0 else "bad",
        "varianceText": format_number(variance, 0),
        "manpowerPresent": to_number(production.get("manpowerPresent"), 0.0),
        "currentHour": production.get("currentHour") or quality.get("currentHour"),
        "prevWorkingDate": production.get("prevWorkingDate"),
        "prevWorkingAchievedQty": to_number(production.get("prevWorkingAchievedQty"), 0.0),
        "planPercent": plan,
        "planTone": kpi_tone("plan", plan),
        "hourlyEfficiency": hourly_eff,
        "avgEfficiency": avg_eff,
        "efficiencyTone": kpi_tone("efficiency", avg_eff),
        "rftPercent": rft,
        "rftTone": kpi_tone("rft", rft),
        "dhuPercent": dhu,
        "dhuTone": kpi_tone("dhu", dhu),
        "defectRatePercent": defect_rate,
        "totalInspected": to_number(quality.get("totalInspected"), 0.0),
        # A falsy WIP value falls through to the next alias.
        "wipToday": to_number(_first(wip, "todayWip", "today", "wipToday", default=0), 0.0),
        "wipTotal": to_number(_first(wip, "totalWip", "total", "wipTotal", default=0), 0.0),
        "hasWip": wip is not None,
        "factory": factory,
        "building": building,
    }


def _card_for(snapshot, row, factory, building) -> dict:
    key = segment_key_of(row)
    header = snapshot.headers.get(key)
    media = snapshot.media.get(media_key_for(row, header, factory, building))
    return build_card(row, header, media, snapshot.wip.get(key), factory, building)


def normalise_variance(records: Iterable[Mapping[str, Any]] | None) -> list:
    """Return ``[{hour, label, variance}]`` sorted by hour."""

    points = []
    for record in records or []:
        if not isinstance(record, Mapping):
            continue
        hour = to_number(_first(record, "hour", "hourIndex", "h"), None)
        if hour is None:
            continue
        production = record.get("production") or {}
        raw = _first(record, "varianceQty", "variance", "variance_count")
        if raw is None:
            raw = _first(production, "varianceQty", "variance", default=0)
        hour = int(hour)
        points.append(
            {
                "hour": hour,
                "label": record.get("hourLabel") or hour_label(hour),
                "variance": round_half_up(to_number(raw, 0.0)),
            }
        )
    points.sort(key=lambda point: point["hour"])
    return points


def build_dashboard_view(snapshot, filters, view_name: str = "grid") -> dict:
    """Return the JSON view model for a poller snapshot."""

    rows = list(snapshot.segments)
    production = aggregate_production(rows)
    quality = aggregate_quality(rows)
    totals = {
        "targetQty": production["targetQty"],
        "achievedQty": production["achievedQty"],
        "varianceQty": production["varianceQty"],
        "manpowerPresent": production["manpowerPresent"],
        "planPercent": production["planPercent"],
        "planTone": kpi_tone("plan", production["planPercent"]),
        "totalInspected": quality["totalInspected"],
        "totalPassed": quality["totalPassed"],
        "rftPercent": quality["rftPercent"],
        "dhuPercent": quality["dhuPercent"],
        "defectRatePercent": quality["defectRatePercent"],
    }

    view = {
        "view": view_name,
        "filters": {
            "factory": filters.factory,
            "building": filters.building,
            "date": filters.date,
            "line": filters.line,
        },
        "loading": snapshot.loading,
        "error": snapshot.error,
        "tick": snapshot.tick,
        "updatedAt": snapshot.updated_at.isoformat() if snapshot.updated_at else None,
        "totals": totals,
        "segmentCount": len(rows),
    }

    if view_name == "tv":
        current = snapshot.current_segment
        card = _card_for(snapshot, current, filters.factory, filters.building) if current else None
        view["card"] = card
        view["position"] = {
            "index": snapshot.current_index % len(rows) if rows else 0,
            "count": len(rows),
        }
        same_card = card is not None and snapshot.variance_key == card["key"]
        view["variance"] = normalise_variance(snapshot.variance) if same_card else []
    else:
        view["cards"] = [
            _card_for(snapshot, row, filters.factory, filters.building) for row in rows
        ]
    return view


def summary_series(items, all_buildings: bool, line_order=(), building_order=()) -> list:
    """Chart rows for the floor summary, in floor or line order.

    With ``all_buildings`` the items are per building, otherwise per line.
    """

    label_field = "building" if all_buildings else "line"
    order = building_order if all_buildings else line_order
    series = []
    for item in items or []:
        production = item.get("production") or {}
        quality = item.get("quality") or {}
        series.append(
            {
                "label": item.get(label_field) or "-",
                "targetQty": to_number(production.get("targetQty"), 0.0),
                "achievedQty": to_number(production.get("achievedQty"), 0.0),
                "hourlyEff": to_number(production.get("currentHourEfficiency"), 0.0),
                "avgEff": to_number(production.get("avgEffPercent"), 0.0),
                "rft": to_number(quality.get("rftPercent"), 0.0),
                "dhu": to_number(quality.get("dhuPercent"), 0.0),
                "defectRate": to_number(quality.get("defectRatePercent"), 0.0),
            }
        )
    series.sort(key=lambda point: label_order_index(point["label"], order))
    return series


def group_compare_rows(rows) -> dict:
    """``{building: {line: [rows sorted by buyer, style]}}`` for the compare table."""

    grouped: dict = {}
    for row in rows or []:
        building = row.get("building") or "-"
        line = row.get("line") or "-"
        grouped.setdefault(building, {}).setdefault(line, []).append(row)
    for lines in grouped.values():
        for line_rows in lines.values():
            line_rows.sort(key=lambda r: (str(r.get("buyer") or ""), str(r.get("style") or "")))
    return grouped
