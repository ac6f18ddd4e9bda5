"""End-to-end retrieval experiments.

An experiment loads parsed topics and query embeddings, runs the two-stage
retriever over every topic, writes a run file and (when judgments are given)
evaluates it. Everything lands in a timestamped run directory:

    data/runs/run_<timestamp>/
        run.json          metadata, config and stage status
        run.txt           ranked results in run format
        run.log           DEBUG log of the experiment
        evaluation.json   per-query and mean metrics

Usage:
    from trial_retrieval.experiments.runner import ExperimentConfig, run_experiment

    outcome = run_experiment(ExperimentConfig(
        db_path="data/index/trials.db",
        topics_path="data/topics.json",
        query_embeddings_path="data/query_embeddings.json",
        qrels_path="data/qrels.txt",
    ))
"""

import logging
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from trial_retrieval.constants import (
    DEFAULT_EVAL_CUTOFF,
    DEFAULT_LEXICAL_LIMIT,
    DEFAULT_RUN_TAG,
    DEFAULT_VECTOR_LIMIT,
    LEXICAL_RUN_TAG,
    VECTOR_RUN_TAG,
)
from trial_retrieval.evaluation.metrics import CutoffPolicy, evaluate_run, macro_average
from trial_retrieval.evaluation.report import build_summary, format_report, save_summary
from trial_retrieval.evaluation.run_format import read_qrels, read_run, write_run
from trial_retrieval.infra.figures import create_metrics_figure, save_figure
from trial_retrieval.infra.runs import (
    EVALUATION_FILE,
    RUN_FILE_NAME,
    RUN_LOG_FILE,
    create_run,
    update_run_status,
)
from trial_retrieval.records.loader import load_query_embeddings, load_topics, topics_to_queries
from trial_retrieval.search.base import Query, RankedList
from trial_retrieval.search.fts5 import FTS5TrialBackend
from trial_retrieval.search.retriever import RetrievalConfig, RetrievalOutcome, TwoStageRetriever
from trial_retrieval.search.vector import DEFAULT_VECTOR_DIMENSIONS, VectorTrialBackend

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ExperimentConfig:
    db_path: str
    topics_path: str | Path
    query_embeddings_path: str | Path
    qrels_path: str | Path | None = None
    vector_db_path: str | None = None
    vector_dimensions: int = DEFAULT_VECTOR_DIMENSIONS
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    run_tag: str = DEFAULT_RUN_TAG
    eval_cutoff: int = DEFAULT_EVAL_CUTOFF
    cutoff_policy: CutoffPolicy = CutoffPolicy.ADAPTIVE
    save_figures: bool = False
    description: str | None = None


@dataclass
class EvaluationOutcome:
    per_query: list[dict[str, Any]]
    aggregate: dict[str, Any]
    report: str
    summary_path: Path | None = None


@dataclass
class ExperimentOutcome:
    run_id: str
    run_dir: Path
    run_file: Path
    outcomes: list[RetrievalOutcome]
    evaluation: EvaluationOutcome | None = None

    @property
    def num_ranked(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "ranked")

    @property
    def num_skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "skipped")

    @property
    def num_failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "failed")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_run_logging(run_dir: Path | None = None, level: int = logging.INFO) -> logging.Logger:
    """Send package logs to stdout and, when given a run dir, to <run_dir>/run.log."""
    package_logger = logging.getLogger("trial_retrieval")
    package_logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if run_dir is not None:
        file_handler = logging.FileHandler(run_dir / RUN_LOG_FILE, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger


def _config_snapshot(config: ExperimentConfig) -> dict[str, Any]:
    snapshot = asdict(config)
    snapshot["topics_path"] = str(config.topics_path)
    snapshot["query_embeddings_path"] = str(config.query_embeddings_path)
    snapshot["qrels_path"] = str(config.qrels_path) if config.qrels_path else None
    snapshot["cutoff_policy"] = config.cutoff_policy.value
    snapshot["retrieval"]["gender_mode"] = config.retrieval.gender_mode.value
    snapshot["retrieval"]["text_fields"] = list(config.retrieval.text_fields)
    return snapshot


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


def load_queries(topics_path: str | Path, query_embeddings_path: str | Path) -> list[Query]:
    topics = load_topics(topics_path)
    embeddings = load_query_embeddings(query_embeddings_path)
    logger.info("Loaded %d topics and %d query embeddings", len(topics), len(embeddings))
    return topics_to_queries(topics, embeddings)


def run_experiment(config: ExperimentConfig) -> ExperimentOutcome:
    """Run the two-stage retriever over all topics, write the run file, evaluate.

    Per-query skips and failures are recorded in the outcomes and never stop
    the batch. Missing input files raise.
    """
    run_id, run_dir = create_run(config.description, _config_snapshot(config))
    setup_run_logging(run_dir)
    logger.info("RUN START: %s", run_id)

    queries = load_queries(config.topics_path, config.query_embeddings_path)
    # The FTS5 index returns stored vectors with its candidates; a sqlite-vec
    # database only fills in trials that were indexed without one.
    embedding_store = None
    if config.vector_db_path:
        embedding_store = VectorTrialBackend(config.vector_dimensions).embedding_store(
            config.vector_db_path
        )
    retriever = TwoStageRetriever(
        FTS5TrialBackend(),
        config.db_path,
        config.retrieval,
        embedding_store=embedding_store,
    )
    outcomes = retriever.retrieve_all(queries)

    run_file = run_dir / RUN_FILE_NAME
    lines_written = write_run(
        run_file,
        [(outcome.query_id, outcome.ranked) for outcome in outcomes if outcome.status == "ranked"],
        config.run_tag,
    )
    experiment = ExperimentOutcome(run_id, run_dir, run_file, outcomes)
    update_run_status(
        run_dir,
        "retrieval",
        {
            "ranked": experiment.num_ranked,
            "skipped": experiment.num_skipped,
            "failed": experiment.num_failed,
            "lines_written": lines_written,
        },
    )
    logger.info(
        "Wrote %d lines to %s (ranked=%d skipped=%d failed=%d)",
        lines_written,
        run_file,
        experiment.num_ranked,
        experiment.num_skipped,
        experiment.num_failed,
    )

    if config.qrels_path is not None:
        experiment.evaluation = evaluate_run_file(
            run_file,
            config.qrels_path,
            cutoff=config.eval_cutoff,
            policy=config.cutoff_policy,
            output_dir=run_dir,
            save_figures=config.save_figures,
        )
        update_run_status(
            run_dir,
            "evaluation",
            {"num_queries": experiment.evaluation.aggregate["num_queries"]},
        )

    logger.info("RUN COMPLETE: %s", run_id)
    return experiment


def run_lexical_baseline(
    db_path: str,
    queries: list[Query],
    output_path: str | Path,
    limit: int = DEFAULT_LEXICAL_LIMIT,
    tag: str = LEXICAL_RUN_TAG,
) -> int:
    """Text-only run without demographic filters. Returns lines written."""
    backend = FTS5TrialBackend()
    rankings: list[tuple[int, RankedList]] = []
    for query in queries:
        if not query.text.strip():
            logger.warning("Skipping query %s: no query text", query.id)
            continue
        try:
            rankings.append((query.id, backend.search(db_path, query.text, limit=limit)))
        except Exception as error:
            logger.warning("Query %s failed: %s", query.id, error)
    return write_run(output_path, rankings, tag)


def run_vector_baseline(
    db_path: str,
    queries: list[Query],
    output_path: str | Path,
    vector_dimensions: int,
    limit: int = DEFAULT_VECTOR_LIMIT,
    tag: str = VECTOR_RUN_TAG,
) -> int:
    """Embedding-only KNN run. Queries without an embedding are skipped. Returns lines written."""
    backend = VectorTrialBackend(vector_dimensions=vector_dimensions)
    rankings: list[tuple[int, RankedList]] = []
    for query in queries:
        if query.embedding is None:
            logger.warning("Skipping query %s: no query embedding", query.id)
            continue
        try:
            rankings.append((query.id, backend.search(db_path, query.embedding, limit=limit)))
        except Exception as error:
            logger.warning("Query %s failed: %s", query.id, error)
    return write_run(output_path, rankings, tag)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate_run_file(
    run_file: str | Path,
    qrels_file: str | Path,
    cutoff: int = DEFAULT_EVAL_CUTOFF,
    policy: CutoffPolicy = CutoffPolicy.ADAPTIVE,
    output_dir: str | Path | None = None,
    save_figures: bool = False,
) -> EvaluationOutcome:
    """Evaluate a run file against a judgment file.

    When `output_dir` is given, writes evaluation.json there (and a per-query
    metrics chart when `save_figures` is set).
    """
    run = read_run(run_file)
    qrels = read_qrels(qrels_file)
    logger.info("Evaluating %d queries (%d judged)", len(run), len(qrels))

    per_query = evaluate_run(run, qrels, cutoff=cutoff, policy=policy)
    aggregate = macro_average(per_query)
    report = format_report(per_query, aggregate, cutoff)

    outcome = EvaluationOutcome(
        per_query=[dict(metrics) for metrics in per_query],
        aggregate=dict(aggregate),
        report=report,
    )

    if output_dir is not None:
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        summary = build_summary(per_query, aggregate, cutoff, policy, run_file, qrels_file)
        outcome.summary_path = output_path / EVALUATION_FILE
        save_summary(summary, outcome.summary_path)
        if save_figures and per_query:
            fig = create_metrics_figure(per_query, title=Path(run_file).name)
            save_figure(fig, output_path, "per_query_metrics")

    return outcome
