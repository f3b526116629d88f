"""Factory reference lists loaded once per process.

Factories, floors (buildings), sewing lines, hour labels, buyers and defect
codes are the same for every screen.  They are read from a JSON file at
startup and handed to the Flask app, so individual views never carry their
own copies.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from hour_utils import hour_label

DEFAULT_OPTIONS_PATH = Path(__file__).resolve().parent / "floor_options.json"


def _default_lines() -> tuple[str, ...]:
    return tuple(f"Line-{n}" for n in range(1, 16))


def _default_hours() -> tuple[str, ...]:
    return tuple(hour_label(n) for n in range(1, 13))


@dataclass(frozen=True)
class ReferenceData:
    """Option lists shared by every dashboard and entry form."""

    factories: tuple[str, ...] = ("K-1", "K-2", "K-3")
    buildings: tuple[str, ...] = ("A-2", "B-2", "A-3", "B-3", "A-4", "B-4", "A-5", "B-5")
    lines: tuple[str, ...] = field(default_factory=_default_lines)
    hours: tuple[str, ...] = field(default_factory=_default_hours)
    buyers: tuple[str, ...] = ()
    defects: tuple[str, ...] = ("301 - OPEN SEAM", "302 - SKIP STITCH", "303 - RUN OFF STITCH")
    default_factory: str = "K-2"
    default_building: str = "A-2"
    timezone: str = "Asia/Dhaka"

    @property
    def line_filter_options(self) -> tuple[str, ...]:
        """Line choices for dashboard filters, led by ``ALL``."""

        return ("ALL",) + self.lines


def _string_tuple(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        return None
    items = tuple(str(item).strip() for item in value if str(item).strip())
    return items or None


def _from_mapping(raw: Mapping[str, Any]) -> ReferenceData:
    defaults = ReferenceData()
    overrides: dict[str, Any] = {}
    for name in ("factories", "buildings", "lines", "hours", "buyers", "defects"):
        items = _string_tuple(raw.get(name))
        if items is not None:
            overrides[name] = items
    for name in ("default_factory", "default_building", "timezone"):
        value = raw.get(name)
        if isinstance(value, str) and value.strip():
            overrides[name] = value.strip()
    if not overrides:
        return defaults
    return ReferenceData(**{**defaults.__dict__, **overrides})


def load_reference_data(path: str | Path | None = None) -> ReferenceData:
    """Read reference data from ``path`` (or ``FLOOR_OPTIONS_FILE``).

    Missing or malformed files yield the built-in defaults.
    """

    options_path = Path(path or os.environ.get("FLOOR_OPTIONS_FILE") or DEFAULT_OPTIONS_PATH)
    try:
        with open(options_path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return ReferenceData()
    if not isinstance(raw, Mapping):
        return ReferenceData()
    return _from_mapping(raw)


_CACHE: ReferenceData | None = None
_CACHE_LOCK = threading.Lock()


def get_reference_data() -> ReferenceData:
    """Return the process-wide reference data, loading it on first use."""

    global _CACHE
    with _CACHE_LOCK:
        if _CACHE is None:
            _CACHE = load_reference_data()
        return _CACHE


def reset_reference_data() -> None:
    """Forget the cached reference data so the next access reloads it."""

    global _CACHE
    with _CACHE_LOCK:
        _CACHE = None
