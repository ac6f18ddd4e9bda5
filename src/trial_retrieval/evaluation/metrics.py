import math
from enum import Enum

from trial_retrieval.constants import DEFAULT_EVAL_CUTOFF
from trial_retrieval.types import (
    AggregateMetricsDict,
    JudgmentTable,
    QueryMetricsDict,
    RunTable,
)

METRIC_KEYS: tuple[str, ...] = ("precision", "recall", "average_precision", "ndcg")


class CutoffPolicy(Enum):
    """How the per-query cutoff k is chosen.

    ADAPTIVE: k = min(cutoff, number retrieved for the query).
    FIXED: k = cutoff for every query.
    """

    ADAPTIVE = "adaptive"
    FIXED = "fixed"


def cutoff_for(retrieved: list[str], cutoff: int, policy: CutoffPolicy) -> int:
    if policy is CutoffPolicy.ADAPTIVE:
        return min(cutoff, len(retrieved))
    return cutoff


# ---------------------------------------------------------------------------
# Single-query metrics
# ---------------------------------------------------------------------------


def _relevant_retrieved(retrieved: list[str], relevant: dict[str, int], k: int) -> int:
    return sum(1 for doc_id in retrieved[:k] if relevant.get(doc_id, 0) > 0)


def precision_at_k(retrieved: list[str], relevant: dict[str, int], k: int) -> float:
    """Fraction of the first k positions holding a relevant document.

    Divides by k even when fewer than k documents were retrieved; 0 when k is 0.
    """
    if k <= 0:
        return 0.0
    return _relevant_retrieved(retrieved, relevant, k) / k


def recall_at_k(retrieved: list[str], relevant: dict[str, int], k: int) -> float:
    """Fraction of judged-relevant documents found in the first k; 0 with no judgments."""
    if not relevant:
        return 0.0
    return _relevant_retrieved(retrieved, relevant, k) / len(relevant)


def average_precision_at_k(retrieved: list[str], relevant: dict[str, int], k: int) -> float:
    """Sum of precision at each relevant position in the first k, over all judged-relevant.

    Normalised by the total number of judged-relevant documents, so relevant
    documents beyond the cutoff pull the value below 1.
    """
    if not relevant:
        return 0.0
    hits = 0
    precision_sum = 0.0
    for index, doc_id in enumerate(retrieved[:k]):
        if relevant.get(doc_id, 0) > 0:
            hits += 1
            precision_sum += hits / (index + 1)
    return precision_sum / len(relevant)


def _discounted_gain(grades: list[int]) -> float:
    # Position 0 is undiscounted; position i >= 1 is divided by log2(i + 1)
    total = 0.0
    for index, grade in enumerate(grades):
        total += grade if index == 0 else grade / math.log2(index + 1)
    return total


def dcg_at_k(retrieved: list[str], relevant: dict[str, int], k: int) -> float:
    return _discounted_gain([relevant.get(doc_id, 0) for doc_id in retrieved[:k]])


def ideal_dcg_at_k(relevant: dict[str, int], k: int) -> float:
    """DCG of the judged grades sorted descending, independent of what was retrieved."""
    ideal_grades = sorted(relevant.values(), reverse=True)
    return _discounted_gain(ideal_grades[: min(k, len(ideal_grades))])


def ndcg_at_k(retrieved: list[str], relevant: dict[str, int], k: int) -> float:
    ideal = ideal_dcg_at_k(relevant, k)
    if ideal == 0:
        return 0.0
    return dcg_at_k(retrieved, relevant, k) / ideal


def compute_query_metrics(
    query_id: str,
    retrieved: list[str],
    relevant: dict[str, int],
    k: int,
) -> QueryMetricsDict:
    return {
        "query_id": query_id,
        "k": k,
        "precision": precision_at_k(retrieved, relevant, k),
        "recall": recall_at_k(retrieved, relevant, k),
        "average_precision": average_precision_at_k(retrieved, relevant, k),
        "dcg": dcg_at_k(retrieved, relevant, k),
        "ideal_dcg": ideal_dcg_at_k(relevant, k),
        "ndcg": ndcg_at_k(retrieved, relevant, k),
    }


# ---------------------------------------------------------------------------
# Whole-run evaluation
# ---------------------------------------------------------------------------


def evaluate_run(
    run: RunTable,
    qrels: JudgmentTable,
    cutoff: int = DEFAULT_EVAL_CUTOFF,
    policy: CutoffPolicy = CutoffPolicy.ADAPTIVE,
) -> list[QueryMetricsDict]:
    """Per-query metrics for every query in the run, in run order.

    Queries judged but absent from the run are not evaluated.
    """
    per_query: list[QueryMetricsDict] = []
    for query_id, retrieved in run.items():
        relevant = qrels.get(query_id, {})
        k = cutoff_for(retrieved, cutoff, policy)
        per_query.append(compute_query_metrics(query_id, retrieved, relevant, k))
    return per_query


def macro_average(per_query: list[QueryMetricsDict]) -> AggregateMetricsDict:
    """Arithmetic mean of each metric over the evaluated queries (zeros when empty)."""
    if not per_query:
        return {
            "num_queries": 0,
            "precision": 0.0,
            "recall": 0.0,
            "average_precision": 0.0,
            "ndcg": 0.0,
        }

    count = len(per_query)
    return {
        "num_queries": count,
        "precision": sum(metrics["precision"] for metrics in per_query) / count,
        "recall": sum(metrics["recall"] for metrics in per_query) / count,
        "average_precision": sum(metrics["average_precision"] for metrics in per_query) / count,
        "ndcg": sum(metrics["ndcg"] for metrics in per_query) / count,
    }
