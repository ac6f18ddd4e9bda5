import json
from pathlib import Path

from trial_retrieval.evaluation.metrics import CutoffPolicy, evaluate_run, macro_average
from trial_retrieval.evaluation.report import build_summary, format_report, save_summary
from trial_retrieval.infra.figures import create_metrics_figure, save_figure, slugify_for_path

RUN = {"1": ["A", "C", "B"], "2": ["X"]}
QRELS = {"1": {"A": 2, "B": 1}}


def test_report_lists_each_query_with_its_k() -> None:
    per_query = evaluate_run(RUN, QRELS)
    report = format_report(per_query, macro_average(per_query), cutoff=10)
    assert "Query 1:" in report
    assert "  P@3: 0.6667" in report
    assert "  NDCG@3: 0.8770" in report
    assert "Query 2:" in report
    assert "  Recall@1: 0.0000" in report


def test_report_ends_with_means_at_cutoff() -> None:
    per_query = evaluate_run(RUN, QRELS)
    lines = format_report(per_query, macro_average(per_query), cutoff=10).splitlines()
    assert lines[-5] == "Average metrics over 2 queries:"
    assert lines[-4] == "  Mean P@10: 0.3333"
    assert lines[-3] == "  Mean Recall@10: 0.5000"
    assert lines[-2].startswith("  MAP@10: ")
    assert lines[-1].startswith("  Mean NDCG@10: ")


def test_summary_round_trips_through_json(tmp_path: Path) -> None:
    per_query = evaluate_run(RUN, QRELS)
    summary = build_summary(
        per_query, macro_average(per_query), 10, CutoffPolicy.FIXED, "run.txt", "qrels.txt"
    )
    path = tmp_path / "evaluation.json"
    save_summary(summary, path)
    loaded = json.loads(path.read_text())
    assert loaded["cutoff_policy"] == "fixed"
    assert loaded["aggregate"]["num_queries"] == 2
    assert [metrics["query_id"] for metrics in loaded["per_query"]] == ["1", "2"]


def test_metrics_figure_is_saved_per_format(tmp_path: Path) -> None:
    per_query = evaluate_run(RUN, QRELS)
    fig = create_metrics_figure(per_query, title="run.txt")
    saved = save_figure(fig, tmp_path, "Per Query Metrics", formats=("png", ".PNG", "svg"))
    assert set(saved) == {"png", "svg"}
    assert saved["png"].name == "per-query-metrics.png"
    assert saved["png"].exists()


def test_slugify_for_path_falls_back_for_empty_input() -> None:
    assert slugify_for_path("***") == "na"
