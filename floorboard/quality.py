"""Hour-by-defect quality table built from hourly inspection records."""

from __future__ import annotations

import io
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

from hour_utils import hour_label

from .metrics import to_number

HOUR_COLUMNS = tuple(hour_label(n) for n in range(1, 13))

_COUNT_FIELDS = {
    "inspected": "inspectedQty",
    "passed": "passedQty",
    "afterRepair": "afterRepair",
    "defectivePcs": "defectivePcs",
}


def _rate(numerator: float, inspected: float) -> str:
    if inspected <= 0:
        return "0.00"
    return f"{numerator / inspected * 100:.2f}"


def _row_hour(row: Mapping[str, Any]) -> str:
    return str(row.get("hourLabel") or row.get("hour") or "")


def line_options(rows: Iterable[Mapping[str, Any]], base_lines: Sequence[str]) -> list[str]:
    """Configured lines followed by any extra lines present in ``rows``."""

    options = list(base_lines)
    for row in rows or []:
        line = row.get("line")
        if line and line not in options:
            options.append(line)
    return options


def _defect_frame(rows: list[Mapping[str, Any]]) -> pd.DataFrame:
    records = []
    for row in rows:
        hour = _row_hour(row)
        for defect in row.get("selectedDefects") or []:
            if not isinstance(defect, Mapping) or not defect.get("name"):
                continue
            records.append(
                {
                    "name": defect["name"],
                    "hour": hour,
                    "quantity": to_number(defect.get("quantity"), 0.0),
                }
            )
    return pd.DataFrame(records, columns=["name", "hour", "quantity"])


def build_quality_table(
    rows: Iterable[Mapping[str, Any]] | None,
    line: str | None = None,
    hours: Sequence[str] = HOUR_COLUMNS,
) -> dict:
    """Pivot inspections into per-hour counts, defect rows and rate strings.

    Rows whose hour label is not one of ``hours`` still count towards the
    defect totals but not towards the per-hour or overall counts.
    """

    rows = [row for row in rows or [] if isinstance(row, Mapping)]
    if line:
        rows = [row for row in rows if row.get("line") == line]
    hours = list(hours)

    defects = _defect_frame(rows)
    defect_rows = []
    if not defects.empty:
        totals = defects.groupby("name", sort=False)["quantity"].sum()
        per_hour = defects.pivot_table(
            index="name", columns="hour", values="quantity", aggfunc="sum", fill_value=0
        )
        for name in totals.sort_values(ascending=False, kind="stable").index:
            cells = per_hour.loc[name] if name in per_hour.index else pd.Series(dtype=float)
            defect_rows.append(
                {
                    "name": name,
                    "perHour": {h: float(cells.get(h, 0)) for h in hours},
                    "total": float(totals[name]),
                }
            )

    counts = pd.DataFrame(
        [
            {
                "hour": _row_hour(row),
                **{key: to_number(row.get(field), 0.0) for key, field in _COUNT_FIELDS.items()},
                "defects": sum(
                    to_number(d.get("quantity"), 0.0)
                    for d in row.get("selectedDefects") or []
                    if isinstance(d, Mapping)
                ),
            }
            for row in rows
        ],
        columns=["hour", *_COUNT_FIELDS, "defects"],
    )
    counts = counts.astype({column: float for column in [*_COUNT_FIELDS, "defects"]})
    counts = counts[counts["hour"].isin(hours)]
    by_hour = counts.groupby("hour").sum(numeric_only=True).reindex(hours, fill_value=0.0)

    per_hour_counts = {
        column: {h: float(by_hour.at[h, column]) for h in hours}
        for column in by_hour.columns
    }
    totals = {column: float(by_hour[column].sum()) for column in by_hour.columns}

    return {
        "hours": hours,
        "defectRows": defect_rows,
        "perHour": per_hour_counts,
        "rates": {
            "defectiveRate": {
                h: _rate(by_hour.at[h, "defectivePcs"], by_hour.at[h, "inspected"]) for h in hours
            },
            "rft": {h: _rate(by_hour.at[h, "passed"], by_hour.at[h, "inspected"]) for h in hours},
            "dhu": {h: _rate(by_hour.at[h, "defects"], by_hour.at[h, "inspected"]) for h in hours},
        },
        "totals": totals,
        "totalRates": {
            "defectiveRate": _rate(totals["defectivePcs"], totals["inspected"]),
            "rft": _rate(totals["passed"], totals["inspected"]),
            "dhu": _rate(totals["defects"], totals["inspected"]),
        },
    }


_SUMMARY_ROWS = (
    ("Inspected", "perHour", "inspected", "totals"),
    ("Passed", "perHour", "passed", "totals"),
    ("After repair", "perHour", "afterRepair", "totals"),
    ("Defective pcs", "perHour", "defectivePcs", "totals"),
    ("Total defects", "perHour", "defects", "totals"),
    ("Defective rate %", "rates", "defectiveRate", "totalRates"),
    ("RFT %", "rates", "rft", "totalRates"),
    ("DHU %", "rates", "dhu", "totalRates"),
)


def export_quality_workbook(table: Mapping[str, Any], title: str = "Quality") -> bytes:
    """Write a built quality table to an ``.xlsx`` workbook."""

    wb = Workbook()
    ws = wb.active
    ws.title = title[:31] or "Quality"
    hours = list(table["hours"])

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill("solid", fgColor="1E293B")
    ws.append(["Defect", *hours, "Total"])
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center")

    for defect in table["defectRows"]:
        ws.append([defect["name"], *(defect["perHour"][h] for h in hours), defect["total"]])

    for label, section, key, total_section in _SUMMARY_ROWS:
        values = table[section][key]
        total = table[total_section][key]
        ws.append([label, *(values[h] for h in hours), total])
        ws.cell(row=ws.max_row, column=1).font = Font(bold=True)

    ws.column_dimensions["A"].width = 28
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
