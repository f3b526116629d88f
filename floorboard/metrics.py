"""Derived production and quality metrics.

All helpers are pure.  Percentages are computed from raw counts; when rows are
combined the counts are summed first and the percentage derived from the
sums, never by averaging per-row percentages.
"""

from __future__ import annotations

import math
import sys
from typing import Any, Iterable, Mapping, Sequence


def to_number(value: Any, fallback: Any = 0) -> Any:
    """Return ``value`` as a float, or ``fallback`` when it is not finite.

    Numeric strings (``"12"``, ``" 3.5 "``) are accepted the way a browser's
    ``Number()`` accepts them; blank strings count as zero.
    """

    if value is None:
        return fallback
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            # Integers beyond float range saturate.
            number = sys.float_info.max if value > 0 else -sys.float_info.max
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except (TypeError, ValueError):
            return fallback
    if math.isnan(number) or math.isinf(number):
        return fallback
    return number


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up, as dashboards display."""

    return int(math.floor(value + 0.5))


def clamp_percent(value: Any) -> float:
    """Coerce ``value`` to a number and clamp it to ``[0, 100]``."""

    number = to_number(value, None)
    if number is None:
        return 0.0
    return max(0.0, min(100.0, number))


def format_number(value: Any, digits: int = 2) -> str:
    """Fixed-point text for ``value`` or ``"-"`` when it is not a finite number."""

    number = to_number(value, None)
    if number is None:
        return "-"
    return f"{number:.{digits}f}"


def ratio_percent(numerator: Any, denominator: Any) -> float:
    denominator = to_number(denominator, 0.0)
    if denominator <= 0:
        return 0.0
    return to_number(numerator, 0.0) / denominator * 100.0


def plan_percent(achieved: Any, target: Any) -> float:
    return clamp_percent(ratio_percent(achieved, target))


def rft_percent(passed: Any, inspected: Any) -> float:
    return ratio_percent(passed, inspected)


def dhu_percent(total_defects: Any, inspected: Any) -> float:
    return ratio_percent(total_defects, inspected)


def defect_rate_percent(defective_pieces: Any, inspected: Any) -> float:
    return ratio_percent(defective_pieces, inspected)


def quality_percentages(counts: Mapping[str, Any]) -> dict:
    """Return RFT/DHU/defect-rate percentages for one set of quality counts."""

    inspected = counts.get("totalInspected")
    return {
        "rftPercent": rft_percent(counts.get("totalPassed"), inspected),
        "dhuPercent": dhu_percent(counts.get("totalDefects"), inspected),
        "defectRatePercent": defect_rate_percent(counts.get("totalDefectivePcs"), inspected),
    }


QUALITY_COUNT_FIELDS = ("totalInspected", "totalPassed", "totalDefectivePcs", "totalDefects")
PRODUCTION_COUNT_FIELDS = ("targetQty", "achievedQty", "varianceQty", "manpowerPresent")


def aggregate_quality(rows: Iterable[Mapping[str, Any]]) -> dict:
    """Sum quality counts across segments and derive the floor percentages."""

    totals = {name: 0.0 for name in QUALITY_COUNT_FIELDS}
    for row in rows or []:
        quality = (row or {}).get("quality") or {}
        for name in QUALITY_COUNT_FIELDS:
            totals[name] += to_number(quality.get(name), 0.0)
    totals.update(quality_percentages(totals))
    return totals


def aggregate_production(rows: Iterable[Mapping[str, Any]]) -> dict:
    """Sum production counts across segments and derive the plan percentage."""

    totals = {name: 0.0 for name in PRODUCTION_COUNT_FIELDS}
    for row in rows or []:
        production = (row or {}).get("production") or {}
        for name in PRODUCTION_COUNT_FIELDS:
            totals[name] += to_number(production.get(name), 0.0)
    totals["planPercent"] = plan_percent(totals["achievedQty"], totals["targetQty"])
    return totals


# metric -> (good threshold, warning threshold, higher is better)
_TONE_RULES = {
    "plan": (90.0, 70.0, True),
    "efficiency": (70.0, 55.0, True),
    "rft": (90.0, 80.0, True),
    "dhu": (5.0, 8.0, False),
}


def kpi_tone(metric: str, value: Any) -> str:
    """Classify a KPI as ``good``, ``warn`` or ``bad`` for colouring tiles."""

    good, warn, higher_is_better = _TONE_RULES[metric]
    number = to_number(value, 0.0)
    if higher_is_better:
        if number >= good:
            return "good"
        return "warn" if number >= warn else "bad"
    if number <= good:
        return "good"
    return "warn" if number <= warn else "bad"


def compute_target_preview(
    manpower_present: Any,
    working_hour: Any,
    smv: Any,
    plan_efficiency_percent: Any,
) -> int | None:
    """Full-day target for a header, or ``None`` while inputs are incomplete."""

    values = [to_number(v, None) for v in (manpower_present, working_hour, smv, plan_efficiency_percent)]
    if any(v is None or v <= 0 for v in values):
        return None
    manpower, hours, smv_value, efficiency = values
    target = (manpower * hours * 60.0 / smv_value) * (efficiency / 100.0)
    if not math.isfinite(target) or target <= 0:
        return None
    return round_half_up(target)


def manpower_absent(total: Any, present: Any) -> int | None:
    """Absent operators (never negative); ``None`` when either side is blank."""

    if total in (None, "") or present in (None, ""):
        return None
    total_number = to_number(total, None)
    present_number = to_number(present, None)
    if total_number is None or present_number is None:
        return None
    return int(max(total_number - present_number, 0))


def label_order_index(label: Any, order: Sequence[str]) -> int:
    """Chart position of ``label``: reference order, then its number, else 999."""

    text = str(label or "")
    if text in order:
        return list(order).index(text)
    digits = "".join(ch for ch in text if ch.isdigit())
    if digits:
        return int(digits)
    return 999
