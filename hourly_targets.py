from __future__ import annotations

from typing import Any, Iterable, Mapping

import pandas as pd

from floorboard.exceptions import FormValidationError
from floorboard.metrics import round_half_up, to_number


def _header_value(header: Mapping[str, Any], name: str, default: float) -> float:
    value = header.get(name)
    if value is None:
        return default
    return to_number(value, default)


def base_target_per_hour(header: Mapping[str, Any]) -> int:
    """Per-hour baseline for a target header.

    Uses capacity (``manpower_present * 60 * eff / smv``) when manpower and SMV
    are known, otherwise spreads ``target_full_day`` over the working hours.
    """

    hours = _header_value(header, "working_hour", 1.0)
    manpower = _header_value(header, "manpower_present", 0.0)
    smv = _header_value(header, "smv", 1.0)
    efficiency = _header_value(header, "plan_efficiency_percent", 0.0) / 100.0
    full_day = _header_value(header, "target_full_day", 0.0)

    from_capacity = manpower * 60 * efficiency / smv if manpower > 0 and smv > 0 else 0.0
    from_full_day = full_day / hours if hours > 0 else 0.0
    return round_half_up(from_capacity or from_full_day or 0.0)


def hourly_efficiency(achieved: Any, manpower_present: Any, smv: Any, hours: Any = 1) -> float:
    """Earned minutes over available minutes as a percentage."""

    manpower = to_number(manpower_present, 0.0)
    smv_value = to_number(smv, 0.0)
    hours = to_number(hours, 0.0)
    if manpower <= 0 or smv_value <= 0 or hours <= 0:
        return 0.0
    return to_number(achieved, 0.0) * smv_value * 100.0 / (manpower * 60.0 * hours)


def records_frame(records: Iterable[Mapping[str, Any]] | None) -> pd.DataFrame:
    """Hourly records with a numeric ``hour`` and rounded ``achieved`` column."""

    frame = pd.DataFrame(list(records or []))
    if frame.empty or "hour" not in frame.columns:
        return pd.DataFrame(columns=["hour", "achieved"])
    frame["hour"] = pd.to_numeric(frame["hour"], errors="coerce")
    frame = frame.dropna(subset=["hour"]).copy()
    if "achievedQty" in frame.columns:
        achieved = pd.to_numeric(frame["achievedQty"], errors="coerce").fillna(0.0)
        frame["achieved"] = achieved.map(round_half_up)
    else:
        frame["achieved"] = 0
    frame["hour"] = frame["hour"].astype(int)
    return frame.sort_values("hour", kind="stable").reset_index(drop=True)


def decorate_records(records, base_per_hour: int) -> pd.DataFrame:
    """Add dynamic targets and variances to each saved hour.

    The dynamic target of an hour is the baseline plus any shortfall carried
    over from earlier hours; surplus is never carried forward.
    """

    frame = records_frame(records)
    if frame.empty:
        for column in ("dynamic_target", "per_hour_variance", "net_variance", "shortfall_prev"):
            frame[column] = pd.Series(dtype="int64")
        return frame

    running_prev = frame["achieved"].cumsum().shift(fill_value=0)
    baseline_prev = base_per_hour * (frame["hour"] - 1)
    frame["shortfall_prev"] = (baseline_prev - running_prev).clip(lower=0)
    frame["dynamic_target"] = base_per_hour + frame["shortfall_prev"]
    frame["per_hour_variance"] = frame["achieved"] - frame["dynamic_target"]
    frame["net_variance"] = frame["achieved"].cumsum() - base_per_hour * frame["hour"]
    return frame


def hour_preview(
    header: Mapping[str, Any],
    records,
    selected_hour: Any,
    achieved_input: Any = 0,
) -> dict:
    """Board figures for ``selected_hour`` given what has been saved so far."""

    base = base_target_per_hour(header)
    hour = int(to_number(selected_hour, 1.0) or 1)
    achieved_now = round_half_up(to_number(achieved_input, 0.0))
    frame = decorate_records(records, base)

    previous = frame[frame["hour"] < hour]
    achieved_prev = int(previous["achieved"].sum())
    shortfall = max(0, base * (hour - 1) - achieved_prev)
    posted = int(frame.loc[frame["hour"] <= hour, "achieved"].sum())
    manpower = _header_value(header, "manpower_present", 0.0)
    smv = _header_value(header, "smv", 1.0)

    return {
        "hour": hour,
        "baseTargetPerHour": base,
        "shortfallPrev": shortfall,
        "dynamicTarget": base + shortfall,
        "netVariance": posted - base * hour,
        "previousVariance": int(previous["per_hour_variance"].iloc[-1]) if not previous.empty else 0,
        "cumulativeVariancePrev": int(previous["per_hour_variance"].sum()),
        "hourlyEfficiency": hourly_efficiency(achieved_now, manpower, smv),
        "achieveEfficiency": hourly_efficiency(achieved_prev + achieved_now, manpower, smv, hour),
        "totalAchieved": int(frame["achieved"].sum()),
        "totalNetVariance": int(frame["net_variance"].iloc[-1]) if not frame.empty else 0,
    }


def ensure_hour_unsaved(records, hour: Any) -> None:
    """Raise when ``hour`` already has a saved record."""

    frame = records_frame(records)
    hour_number = int(to_number(hour, 0.0))
    if not frame.empty and (frame["hour"] == hour_number).any():
        raise FormValidationError(f"You already saved data for hour {hour_number}.")


def _record_id(record: Mapping[str, Any]) -> str:
    for name in ("_id", "id"):
        value = record.get(name)
        if isinstance(value, str) and value:
            return value
    return ""


def board_rows(records, base_per_hour: int) -> list[dict]:
    """Decorated records as plain dicts for templates."""

    frame = decorate_records(records, base_per_hour)
    rows = []
    for record in frame.to_dict(orient="records"):
        rows.append(
            {
                "id": _record_id(record),
                "hour": int(record["hour"]),
                "achieved": int(record["achieved"]),
                "dynamicTarget": int(record["dynamic_target"]),
                "perHourVariance": int(record["per_hour_variance"]),
                "netVariance": int(record["net_variance"]),
                "efficiency": to_number(record.get("achieveEfficiency"), 0.0),
            }
        )
    return rows
