"""PNG charts for the dashboards, drawn with matplotlib's Agg backend."""

from __future__ import annotations

import base64
import io
import math
from typing import Iterable, Mapping, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402

from .metrics import label_order_index, to_number  # noqa: E402

POSITIVE_COLOR = "#10b981"
NEGATIVE_COLOR = "#f43f5e"
MIN_VARIANCE_AXIS = 5


def _fig_to_png(fig) -> bytes:
    buf = io.BytesIO()
    fig.savefig(buf, format="png", bbox_inches="tight", facecolor=fig.get_facecolor())
    plt.close(fig)
    buf.seek(0)
    return buf.read()


def _fig_to_data_uri(fig) -> str:
    b64 = base64.b64encode(_fig_to_png(fig)).decode("utf-8")
    return f"data:image/png;base64,{b64}"


def variance_axis_limit(values: Iterable[float]) -> int:
    """Symmetric y-axis bound: the largest absolute variance, at least 5."""

    largest = max((abs(v) for v in values), default=0)
    return max(MIN_VARIANCE_AXIS, int(math.ceil(largest)))


def render_variance_chart(points: Sequence[Mapping], title: str = "Hourly variance") -> bytes:
    """Bar chart of per-hour variance; green at or above zero, red below."""

    fig, ax = plt.subplots(figsize=(6, 2.4))
    fig.patch.set_facecolor("#020617")
    ax.set_facecolor("#020617")
    if not points:
        ax.text(
            0.5,
            0.5,
            "No hourly records yet",
            ha="center",
            va="center",
            color="#94a3b8",
            transform=ax.transAxes,
        )
        ax.set_axis_off()
        return _fig_to_png(fig)

    labels = [str(p.get("label") or p.get("hour")) for p in points]
    values = [to_number(p.get("variance"), 0.0) for p in points]
    colors = [POSITIVE_COLOR if v >= 0 else NEGATIVE_COLOR for v in values]
    limit = variance_axis_limit(values)

    ax.bar(range(len(values)), values, color=colors)
    ax.axhline(0, color="#64748b", linewidth=0.8)
    ax.set_ylim(-limit, limit)
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, rotation=30, ha="right", fontsize=7, color="#cbd5e1")
    ax.tick_params(axis="y", labelsize=7, colors="#cbd5e1")
    ax.set_title(title, fontsize=9, color="#e2e8f0")
    for spine in ax.spines.values():
        spine.set_color("#334155")
    fig.tight_layout()
    return _fig_to_png(fig)


def render_target_chart(
    items: Sequence[Mapping],
    label_field: str,
    order: Sequence[str] = (),
    title: str = "Target vs achieved",
) -> str:
    """Grouped target/achieved bars for summary rows, as a data URI."""

    if not items:
        return ""
    ordered = sorted(
        items, key=lambda item: label_order_index(item.get(label_field), order)
    )
    labels = [str(item.get(label_field) or "-") for item in ordered]
    targets = [to_number(item.get("targetQty"), 0.0) for item in ordered]
    achieved = [to_number(item.get("achievedQty"), 0.0) for item in ordered]

    positions = range(len(labels))
    width = 0.4
    fig, ax = plt.subplots(figsize=(8, 3.5))
    ax.bar([p - width / 2 for p in positions], targets, width, label="Target", color="#38bdf8")
    ax.bar([p + width / 2 for p in positions], achieved, width, label="Achieved", color=POSITIVE_COLOR)
    ax.set_xticks(list(positions))
    ax.set_xticklabels(labels, rotation=45, ha="right", fontsize=7)
    ax.set_ylabel("Pieces")
    ax.set_title(title)
    ax.legend(fontsize=7)
    fig.tight_layout()
    return _fig_to_data_uri(fig)
