"""Identity keys for dashboard segments and style media.

Segments returned by the dashboard endpoint and target headers returned by the
header endpoint are matched on a normalised ``line__buyer__style`` key; style
media documents are matched on ``factory__building__buyer__style__color``.
Every function here is total: missing fields normalise to the empty string.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

KEY_SEPARATOR = "__"

_LINE_NUMBER = re.compile(r"(\d+)")


def normalise(value: Any) -> str:
    """Return ``value`` as a trimmed, lower-cased string (``None`` -> ``""``)."""

    if value is None:
        return ""
    return str(value).strip().lower()


def make_segment_key(line: Any, buyer: Any, style: Any) -> str:
    return KEY_SEPARATOR.join((normalise(line), normalise(buyer), normalise(style)))


def make_style_media_key(
    factory: Any, building: Any, buyer: Any, style: Any, color_model: Any
) -> str:
    return KEY_SEPARATOR.join(
        (
            normalise(factory),
            normalise(building),
            normalise(buyer),
            normalise(style),
            normalise(color_model),
        )
    )


def segment_key_of(record: Mapping[str, Any] | None) -> str:
    record = record or {}
    return make_segment_key(record.get("line"), record.get("buyer"), record.get("style"))


def _timestamp_of(value: Any) -> float:
    """Return an epoch timestamp for ``value`` (0.0 when it cannot be read)."""

    if value is None or value == "":
        return 0.0
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            return 0.0
        # Millisecond epochs come straight from JSON produced by JavaScript.
        return number / 1000.0 if abs(number) > 1e11 else number
    if isinstance(value, Mapping) and "$date" in value:
        return _timestamp_of(value["$date"])
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def effective_timestamp(record: Mapping[str, Any] | None) -> float:
    """Return ``updatedAt`` falling back to ``createdAt`` as an epoch value."""

    if not isinstance(record, Mapping):
        return 0.0
    return _timestamp_of(record.get("updatedAt") or record.get("createdAt"))


def pick_latest(a, b):
    """Return the record with the strictly later timestamp; ties go to ``b``."""

    if effective_timestamp(a) > effective_timestamp(b):
        return a
    return b


def header_id(header: Mapping[str, Any] | None) -> str:
    """Return the identifier of a header regardless of how it was serialised."""

    if not header:
        return ""
    raw = header.get("_id")
    if isinstance(raw, Mapping):
        raw = raw.get("$oid")
    for candidate in (raw, header.get("id"), header.get("headerId")):
        if candidate not in (None, ""):
            return str(candidate)
    return ""


def color_model_of(*records: Mapping[str, Any] | None) -> str:
    """Return the first colour/model value found across ``records``."""

    for record in records:
        if not record:
            continue
        for field in ("color_model", "colorModel", "color", "color_model_name"):
            value = record.get(field)
            if value not in (None, ""):
                return str(value)
    return ""


def line_number(label: Any) -> int:
    """Return the first run of digits in ``label`` (``Line-12`` -> 12), else 0."""

    match = _LINE_NUMBER.search(str(label or ""))
    return int(match.group(1)) if match else 0


def sort_segments(rows: Iterable[Mapping[str, Any]] | None) -> list:
    """Order segments by line number, then style."""

    return sorted(
        rows or [],
        key=lambda row: (line_number(row.get("line")), str(row.get("style") or "")),
    )
