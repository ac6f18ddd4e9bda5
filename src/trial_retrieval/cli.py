"""Command-line entry point for indexing, retrieval, baselines and evaluation.

Examples:
  trial-retrieval index --trials data/trials.jsonl --db data/index/trials.db \\
      --embeddings data/trial_embeddings.jsonl --vector-db data/index/vectors.db
  trial-retrieval retrieve --db data/index/trials.db --topics data/topics.json \\
      --query-embeddings data/query_embeddings.json --qrels data/qrels.txt
  trial-retrieval baseline --method lexical --db data/index/trials.db \\
      --topics data/topics.json --output data/lexical.txt
  trial-retrieval evaluate --run data/runs/run_<ts>/run.txt --qrels data/qrels.txt
  trial-retrieval evaluate --run latest --qrels data/qrels.txt
  trial-retrieval runs
"""

import argparse
import sys
from pathlib import Path

from trial_retrieval.constants import (
    DEFAULT_EVAL_CUTOFF,
    DEFAULT_GENDER_BOOST,
    DEFAULT_LEXICAL_LIMIT,
    DEFAULT_MAX_WORKERS,
    DEFAULT_OUTPUT_SIZE,
    DEFAULT_POOL_SIZE,
    DEFAULT_RUN_TAG,
    DEFAULT_TEXT_FIELDS,
    DEFAULT_VECTOR_LIMIT,
    LEXICAL_RUN_TAG,
    VECTOR_RUN_TAG,
)
from trial_retrieval.evaluation.metrics import CutoffPolicy
from trial_retrieval.experiments.runner import (
    ExperimentConfig,
    evaluate_run_file,
    load_queries,
    run_experiment,
    run_lexical_baseline,
    run_vector_baseline,
    setup_run_logging,
)
from trial_retrieval.infra.runs import NoRunsFoundError, list_runs, resolve_run_file
from trial_retrieval.records.loader import load_topics, topics_to_queries
from trial_retrieval.search.fts5 import FTS5TrialBackend
from trial_retrieval.search.query_builder import GenderMode
from trial_retrieval.search.retriever import RetrievalConfig
from trial_retrieval.search.vector import DEFAULT_VECTOR_DIMENSIONS, VectorTrialBackend


def _cmd_index(args: argparse.Namespace) -> int:
    Path(args.db).parent.mkdir(parents=True, exist_ok=True)
    FTS5TrialBackend().rebuild_database(args.db, args.trials, args.embeddings)

    if args.vector_db:
        if not args.embeddings:
            print("--vector-db requires --embeddings", file=sys.stderr)
            return 2
        Path(args.vector_db).parent.mkdir(parents=True, exist_ok=True)
        VectorTrialBackend(args.dimensions).rebuild_database(args.vector_db, args.embeddings)
    return 0


def _cmd_retrieve(args: argparse.Namespace) -> int:
    config = ExperimentConfig(
        db_path=args.db,
        topics_path=args.topics,
        query_embeddings_path=args.query_embeddings,
        qrels_path=args.qrels,
        vector_db_path=args.vector_db,
        vector_dimensions=args.dimensions,
        retrieval=RetrievalConfig(
            pool_size=args.pool_size,
            output_size=args.output_size,
            text_fields=tuple(args.fields),
            gender_mode=GenderMode(args.gender_mode),
            gender_boost=args.gender_boost,
            max_workers=args.workers,
        ),
        run_tag=args.tag,
        eval_cutoff=args.cutoff,
        cutoff_policy=CutoffPolicy(args.cutoff_policy),
        save_figures=args.figure,
        description=args.description,
    )
    outcome = run_experiment(config)

    print(f"\nRun: {outcome.run_id}")
    print(f"Run file: {outcome.run_file}")
    print(
        f"Ranked: {outcome.num_ranked}  Skipped: {outcome.num_skipped}  "
        f"Failed: {outcome.num_failed}"
    )
    if outcome.evaluation is not None:
        print()
        print(outcome.evaluation.report)
    return 0


def _cmd_baseline(args: argparse.Namespace) -> int:
    setup_run_logging()
    Path(args.output).parent.mkdir(parents=True, exist_ok=True)

    if args.method == "lexical":
        queries = topics_to_queries(load_topics(args.topics))
        written = run_lexical_baseline(
            args.db,
            queries,
            args.output,
            limit=args.limit or DEFAULT_LEXICAL_LIMIT,
            tag=args.tag or LEXICAL_RUN_TAG,
        )
    else:
        if not args.query_embeddings:
            print("--method vector requires --query-embeddings", file=sys.stderr)
            return 2
        queries = load_queries(args.topics, args.query_embeddings)
        written = run_vector_baseline(
            args.db,
            queries,
            args.output,
            vector_dimensions=args.dimensions,
            limit=args.limit or DEFAULT_VECTOR_LIMIT,
            tag=args.tag or VECTOR_RUN_TAG,
        )

    print(f"Wrote {written} lines to {args.output}")
    return 0


def _cmd_evaluate(args: argparse.Namespace) -> int:
    setup_run_logging()
    try:
        run_file = resolve_run_file(args.run)
    except (NoRunsFoundError, FileNotFoundError) as error:
        print(error, file=sys.stderr)
        return 1

    # Evaluating a stored run writes its summary back into that run directory
    output_dir = args.output_dir
    if output_dir is None and run_file != Path(args.run):
        output_dir = run_file.parent

    outcome = evaluate_run_file(
        run_file,
        args.qrels,
        cutoff=args.cutoff,
        policy=CutoffPolicy(args.cutoff_policy),
        output_dir=output_dir,
        save_figures=args.figure,
    )
    print(outcome.report)
    if outcome.summary_path is not None:
        print(f"\nSummary saved to {outcome.summary_path}")
    return 0


def _cmd_runs(args: argparse.Namespace) -> int:
    runs = list_runs()
    if not runs:
        print("No runs found")
        return 0

    for run in runs[: args.limit]:
        stages = ", ".join(run.get("pipeline_status", {})) or "-"
        description = run.get("description") or ""
        print(f"{run['run_id']}  [{stages}]  {description}".rstrip())
    return 0


def _add_evaluation_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--cutoff",
        type=int,
        default=DEFAULT_EVAL_CUTOFF,
        help=f"Evaluation cutoff k (default: {DEFAULT_EVAL_CUTOFF})",
    )
    parser.add_argument(
        "--cutoff-policy",
        choices=[policy.value for policy in CutoffPolicy],
        default=CutoffPolicy.ADAPTIVE.value,
        help="adaptive: k = min(cutoff, retrieved); fixed: k = cutoff (default: adaptive)",
    )
    parser.add_argument(
        "--figure",
        action="store_true",
        help="Also save a per-query metrics chart",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trial-retrieval",
        description="Hybrid clinical-trial retrieval: constrained lexical search + embedding rescoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    index_parser = subparsers.add_parser("index", help="Build the trial index from parsed trials")
    index_parser.add_argument("--trials", required=True, help="Trials JSONL file")
    index_parser.add_argument("--db", required=True, help="FTS5 database path to (re)create")
    index_parser.add_argument(
        "--embeddings", default=None, help="Trial embeddings JSONL (nct_id, embedding)"
    )
    index_parser.add_argument(
        "--vector-db", default=None, help="Also build a sqlite-vec database at this path"
    )
    index_parser.add_argument(
        "--dimensions",
        type=int,
        default=DEFAULT_VECTOR_DIMENSIONS,
        help=f"Embedding size for the vector database (default: {DEFAULT_VECTOR_DIMENSIONS})",
    )
    index_parser.set_defaults(handler=_cmd_index)

    retrieve_parser = subparsers.add_parser(
        "retrieve", help="Run two-stage retrieval over all topics into a new run directory"
    )
    retrieve_parser.add_argument("--db", required=True, help="FTS5 trial database")
    retrieve_parser.add_argument("--topics", required=True, help="Topics JSON or JSONL file")
    retrieve_parser.add_argument(
        "--query-embeddings", required=True, help="Query embeddings JSON keyed by topic number"
    )
    retrieve_parser.add_argument("--qrels", default=None, help="Judgments; evaluate when given")
    retrieve_parser.add_argument(
        "--vector-db",
        default=None,
        help="sqlite-vec database supplying vectors for trials indexed without one",
    )
    retrieve_parser.add_argument(
        "--dimensions",
        type=int,
        default=DEFAULT_VECTOR_DIMENSIONS,
        help=f"Embedding size of the vector database (default: {DEFAULT_VECTOR_DIMENSIONS})",
    )
    retrieve_parser.add_argument(
        "--pool-size",
        type=int,
        default=DEFAULT_POOL_SIZE,
        help=f"Stage-one candidate bound (default: {DEFAULT_POOL_SIZE})",
    )
    retrieve_parser.add_argument(
        "--output-size",
        type=int,
        default=DEFAULT_OUTPUT_SIZE,
        help=f"Documents kept per query (default: {DEFAULT_OUTPUT_SIZE})",
    )
    retrieve_parser.add_argument(
        "--fields",
        nargs="+",
        default=list(DEFAULT_TEXT_FIELDS),
        help="Text fields to match the query against",
    )
    retrieve_parser.add_argument(
        "--gender-mode",
        choices=[mode.value for mode in GenderMode],
        default=GenderMode.FILTER.value,
        help="filter: exclude non-matching trials; boost: prefer matching ones (default: filter)",
    )
    retrieve_parser.add_argument(
        "--gender-boost",
        type=float,
        default=DEFAULT_GENDER_BOOST,
        help=f"Score added by a gender match in boost mode (default: {DEFAULT_GENDER_BOOST})",
    )
    retrieve_parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_MAX_WORKERS,
        help=f"Queries processed in parallel (default: {DEFAULT_MAX_WORKERS})",
    )
    retrieve_parser.add_argument(
        "--tag", default=DEFAULT_RUN_TAG, help=f"Run tag (default: {DEFAULT_RUN_TAG})"
    )
    retrieve_parser.add_argument("--description", default=None, help="Run description")
    _add_evaluation_arguments(retrieve_parser)
    retrieve_parser.set_defaults(handler=_cmd_retrieve)

    baseline_parser = subparsers.add_parser(
        "baseline", help="Single-stage lexical or vector baseline run"
    )
    baseline_parser.add_argument("--method", choices=["lexical", "vector"], required=True)
    baseline_parser.add_argument(
        "--db", required=True, help="FTS5 database (lexical) or sqlite-vec database (vector)"
    )
    baseline_parser.add_argument("--topics", required=True, help="Topics JSON or JSONL file")
    baseline_parser.add_argument(
        "--query-embeddings", default=None, help="Query embeddings JSON (vector only)"
    )
    baseline_parser.add_argument("--output", required=True, help="Run file to write")
    baseline_parser.add_argument(
        "--limit", type=int, default=None, help="Documents per query (default: 100)"
    )
    baseline_parser.add_argument("--tag", default=None, help="Run tag (default: method name)")
    baseline_parser.add_argument(
        "--dimensions",
        type=int,
        default=DEFAULT_VECTOR_DIMENSIONS,
        help=f"Embedding size of the vector database (default: {DEFAULT_VECTOR_DIMENSIONS})",
    )
    baseline_parser.set_defaults(handler=_cmd_baseline)

    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate a run file")
    evaluate_parser.add_argument(
        "--run", required=True, help="Run file, a run id, or \"latest\" for the newest run"
    )
    evaluate_parser.add_argument("--qrels", required=True, help="Judgment file")
    evaluate_parser.add_argument(
        "--output-dir", default=None, help="Directory for evaluation.json (and the chart)"
    )
    _add_evaluation_arguments(evaluate_parser)
    evaluate_parser.set_defaults(handler=_cmd_evaluate)

    runs_parser = subparsers.add_parser("runs", help="List run directories, newest first")
    runs_parser.add_argument(
        "--limit", type=int, default=None, help="Show at most this many runs"
    )
    runs_parser.set_defaults(handler=_cmd_runs)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
