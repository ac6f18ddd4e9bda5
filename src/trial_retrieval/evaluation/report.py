from pathlib import Path
from typing import Any

from trial_retrieval.evaluation.metrics import METRIC_KEYS, CutoffPolicy
from trial_retrieval.infra.io import save_json
from trial_retrieval.types import AggregateMetricsDict, QueryMetricsDict

METRIC_LABELS: dict[str, str] = {
    "precision": "P",
    "recall": "Recall",
    "average_precision": "AP",
    "ndcg": "NDCG",
}

MEAN_LABELS: dict[str, str] = {
    "precision": "Mean P@{k}",
    "recall": "Mean Recall@{k}",
    "average_precision": "MAP@{k}",
    "ndcg": "Mean NDCG@{k}",
}


def format_query_block(metrics: QueryMetricsDict) -> list[str]:
    values: dict[str, Any] = dict(metrics)
    k = values["k"]
    lines = [f"Query {values['query_id']}:"]
    for key in METRIC_KEYS:
        lines.append(f"  {METRIC_LABELS[key]}@{k}: {values[key]:.4f}")
    return lines


def format_report(
    per_query: list[QueryMetricsDict],
    aggregate: AggregateMetricsDict,
    cutoff: int,
) -> str:
    """Human-readable report: one block per query, then the means."""
    lines: list[str] = []
    for metrics in per_query:
        lines.extend(format_query_block(metrics))
        lines.append("")

    means: dict[str, Any] = dict(aggregate)
    lines.append(f"Average metrics over {means['num_queries']} queries:")
    for key in METRIC_KEYS:
        label = MEAN_LABELS[key].format(k=cutoff)
        lines.append(f"  {label}: {means[key]:.4f}")
    return "\n".join(lines)


def build_summary(
    per_query: list[QueryMetricsDict],
    aggregate: AggregateMetricsDict,
    cutoff: int,
    policy: CutoffPolicy,
    run_file: str | Path | None = None,
    qrels_file: str | Path | None = None,
) -> dict[str, Any]:
    return {
        "run_file": str(run_file) if run_file is not None else None,
        "qrels_file": str(qrels_file) if qrels_file is not None else None,
        "cutoff": cutoff,
        "cutoff_policy": policy.value,
        "aggregate": dict(aggregate),
        "per_query": [dict(metrics) for metrics in per_query],
    }


def save_summary(summary: dict[str, Any], path: str | Path) -> None:
    save_json(summary, path)
