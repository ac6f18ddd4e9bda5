import io
from pathlib import Path

import pytest

from trial_retrieval.errors import MalformedRecord
from trial_retrieval.evaluation.run_format import (
    format_run_line,
    parse_qrels_line,
    parse_run_line,
    read_qrels,
    read_run,
    write_run,
    write_run_lines,
)
from trial_retrieval.search.base import ScoredDocument


def _ranked(*pairs: tuple[str, float]) -> list[ScoredDocument]:
    return [ScoredDocument(doc_id, score) for doc_id, score in pairs]


# ---------- writing ----------


def test_format_run_line_uses_four_decimals() -> None:
    assert format_run_line(1, "NCT001", 1, 0.123456, "hybrid_rescore") == (
        "1 Q0 NCT001 1 0.1235 hybrid_rescore"
    )


def test_format_run_line_pads_and_keeps_negative_scores() -> None:
    assert format_run_line("7", "D", 3, 2.0, "t") == "7 Q0 D 3 2.0000 t"
    assert format_run_line("7", "D", 3, -0.5, "t") == "7 Q0 D 3 -0.5000 t"


def test_ranks_are_contiguous_and_one_indexed() -> None:
    out = io.StringIO()
    write_run_lines(out, [(1, _ranked(("A", 0.9), ("B", 0.8), ("C", 0.7)))], "t")
    ranks = [line.split()[3] for line in out.getvalue().splitlines()]
    assert ranks == ["1", "2", "3"]


def test_queries_are_written_in_given_order(tmp_path: Path) -> None:
    path = tmp_path / "run.txt"
    written = write_run(path, [(30, _ranked(("A", 1.0))), (2, _ranked(("B", 1.0), ("C", 0.5)))], "t")
    assert written == 3
    assert [line.split()[0] for line in path.read_text().splitlines()] == ["30", "2", "2"]


def test_empty_ranking_writes_nothing(tmp_path: Path) -> None:
    path = tmp_path / "run.txt"
    assert write_run(path, [(1, [])], "t") == 0
    assert path.read_text() == ""


def test_written_run_reads_back_in_order(tmp_path: Path) -> None:
    path = tmp_path / "run.txt"
    write_run(path, [(1, _ranked(("C", 0.9), ("A", 0.9), ("B", 0.1)))], "t")
    assert read_run(path) == {"1": ["C", "A", "B"]}


# ---------- reading runs ----------


def test_parse_run_line_accepts_four_fields() -> None:
    assert parse_run_line("1 Q0 NCT001 1") == ("1", "NCT001")


def test_parse_run_line_rejects_short_lines() -> None:
    with pytest.raises(MalformedRecord):
        parse_run_line("1 Q0 NCT001")


def test_read_run_skips_malformed_and_blank_lines(tmp_path: Path) -> None:
    path = tmp_path / "run.txt"
    path.write_text("1 Q0 A 1 0.9 t\n\n1 Q0\n1 Q0 B 2 0.8 t\n2 Q0 C 1 0.5 t\n")
    assert read_run(path) == {"1": ["A", "B"], "2": ["C"]}


def test_read_run_keeps_first_occurrence_of_duplicates(tmp_path: Path) -> None:
    path = tmp_path / "run.txt"
    path.write_text("1 Q0 A 1 0.9 t\n1 Q0 B 2 0.8 t\n1 Q0 A 3 0.7 t\n")
    assert read_run(path) == {"1": ["A", "B"]}


def test_read_run_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_run(tmp_path / "missing.txt")


# ---------- reading judgments ----------


def test_parse_qrels_line_returns_grade() -> None:
    assert parse_qrels_line("1 0 NCT001 2") == ("1", "NCT001", 2)


def test_parse_qrels_line_rejects_non_integer_grade() -> None:
    with pytest.raises(MalformedRecord):
        parse_qrels_line("1 0 NCT001 high")


def test_read_qrels_keeps_only_positive_grades(tmp_path: Path) -> None:
    path = tmp_path / "qrels.txt"
    path.write_text("1 0 A 2\n1 0 B 0\n1 0 C 1\n2 0 D 0\nbad line\n")
    assert read_qrels(path) == {"1": {"A": 2, "C": 1}}
