from __future__ import annotations

import re
import unicodedata
from pathlib import Path

import numpy as np
from matplotlib.figure import Figure

from trial_retrieval.evaluation.report import METRIC_LABELS
from trial_retrieval.types import QueryMetricsDict


def slugify_for_path(value: str, max_len: int = 120) -> str:
    if max_len <= 0:
        raise ValueError("max_len must be > 0")

    normalized = unicodedata.normalize("NFKD", value)
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^A-Za-z0-9]+", "-", ascii_text).strip("-").lower()
    if not slug:
        slug = "na"
    return slug[:max_len].strip("-") or "na"


def create_metrics_figure(per_query: list[QueryMetricsDict], title: str | None = None) -> Figure:
    """Grouped bar chart of per-query metrics, one group per query."""
    query_ids = [metrics["query_id"] for metrics in per_query]
    metric_keys = list(METRIC_LABELS)
    positions = np.arange(len(query_ids))
    bar_width = 0.8 / len(metric_keys)

    fig = Figure(figsize=(max(6.0, 0.5 * len(query_ids) + 2.0), 4.0))
    ax = fig.add_subplot(1, 1, 1)
    for offset, key in enumerate(metric_keys):
        values = [dict(metrics)[key] for metrics in per_query]
        ax.bar(positions + offset * bar_width, values, bar_width, label=METRIC_LABELS[key])

    ax.set_xticks(positions + bar_width * (len(metric_keys) - 1) / 2)
    ax.set_xticklabels(query_ids, rotation=90)
    ax.set_ylim(0.0, 1.0)
    ax.set_xlabel("Query")
    ax.legend(loc="upper right")
    if title:
        ax.set_title(title)
    fig.tight_layout()
    return fig


def _normalize_formats(formats: tuple[str, ...]) -> tuple[str, ...]:
    normalized: list[str] = []
    for fmt in formats:
        candidate = fmt.lower().lstrip(".")
        if candidate and candidate not in normalized:
            normalized.append(candidate)
    if not normalized:
        raise ValueError("At least one figure format is required")
    return tuple(normalized)


def save_figure(
    fig: Figure,
    output_dir: str | Path,
    figure_key: str,
    formats: tuple[str, ...] = ("png",),
    dpi: int = 150,
) -> dict[str, Path]:
    """Save a figure once per format as <output_dir>/<slug>.<fmt>."""
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    file_stem = slugify_for_path(figure_key)

    saved_paths: dict[str, Path] = {}
    for fmt in _normalize_formats(formats):
        output_path = directory / f"{file_stem}.{fmt}"
        fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
        saved_paths[fmt] = output_path
    return saved_paths
