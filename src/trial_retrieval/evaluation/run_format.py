"""Run files and relevance judgments.

Run line:       <queryId> Q0 <docId> <rank> <score> <tag>
Judgment line:  <queryId> <iteration> <docId> <relevanceGrade>

Both are whitespace separated. Malformed lines are skipped with a warning;
a missing or unreadable file raises.
"""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TextIO

from trial_retrieval.constants import SCORE_DECIMALS
from trial_retrieval.errors import MalformedRecord
from trial_retrieval.search.base import RankedList
from trial_retrieval.types import JudgmentTable, RunTable

logger = logging.getLogger(__name__)

RUN_ITERATION = "Q0"
MIN_RUN_FIELDS = 4
MIN_QRELS_FIELDS = 4


def format_run_line(query_id: int | str, doc_id: str, rank: int, score: float, tag: str) -> str:
    # str.format is locale independent: always a "." decimal point
    return f"{query_id} {RUN_ITERATION} {doc_id} {rank} {score:.{SCORE_DECIMALS}f} {tag}"


def format_ranked_list(query_id: int | str, ranked: RankedList, tag: str) -> list[str]:
    """Run lines for one query, ranks 1..n in list order."""
    return [
        format_run_line(query_id, document.doc_id, rank, document.score, tag)
        for rank, document in enumerate(ranked, start=1)
    ]


def write_run_lines(
    out: TextIO, rankings: Iterable[tuple[int | str, RankedList]], tag: str
) -> int:
    """Write rankings to an open text stream in the order given. Returns lines written."""
    written = 0
    for query_id, ranked in rankings:
        for line in format_ranked_list(query_id, ranked, tag):
            out.write(line + "\n")
            written += 1
    return written


def write_run(
    path: str | Path, rankings: Iterable[tuple[int | str, RankedList]], tag: str
) -> int:
    """Write a run file. Queries appear in the order given, entries in rank order."""
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        return write_run_lines(f, rankings, tag)


def parse_run_line(line: str) -> tuple[str, str]:
    """Return (query_id, doc_id) from a run line.

    Raises:
        MalformedRecord: If the line has fewer than four fields.
    """
    parts = line.split()
    if len(parts) < MIN_RUN_FIELDS:
        raise MalformedRecord(line, f"expected at least {MIN_RUN_FIELDS} fields")
    return parts[0], parts[2]


def parse_qrels_line(line: str) -> tuple[str, str, int]:
    """Return (query_id, doc_id, grade) from a judgment line.

    Raises:
        MalformedRecord: If the line has fewer than four fields or a non-integer grade.
    """
    parts = line.split()
    if len(parts) < MIN_QRELS_FIELDS:
        raise MalformedRecord(line, f"expected at least {MIN_QRELS_FIELDS} fields")
    try:
        grade = int(parts[3])
    except ValueError as error:
        raise MalformedRecord(line, "relevance grade is not an integer") from error
    return parts[0], parts[2], grade


def read_run(path: str | Path) -> RunTable:
    """Parse a run file into queryId -> docIds, keeping file order as rank order.

    Scores are discarded. A doc id repeated within a query keeps its first position.
    """
    path = Path(path)
    run: RunTable = {}
    seen: dict[str, set[str]] = {}

    with open(path, encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                query_id, doc_id = parse_run_line(line)
            except MalformedRecord as error:
                logger.warning("Skipping %s:%d: %s", path.name, line_num, error.reason)
                continue
            seen_for_query = seen.setdefault(query_id, set())
            if doc_id in seen_for_query:
                logger.warning(
                    "Skipping %s:%d: duplicate %s for query %s", path.name, line_num, doc_id, query_id
                )
                continue
            seen_for_query.add(doc_id)
            run.setdefault(query_id, []).append(doc_id)

    return run


def read_qrels(path: str | Path) -> JudgmentTable:
    """Parse a judgment file into queryId -> docId -> grade, keeping grades > 0 only."""
    path = Path(path)
    qrels: JudgmentTable = {}

    with open(path, encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                query_id, doc_id, grade = parse_qrels_line(line)
            except MalformedRecord as error:
                logger.warning("Skipping %s:%d: %s", path.name, line_num, error.reason)
                continue
            if grade > 0:
                qrels.setdefault(query_id, {})[doc_id] = grade

    return qrels
