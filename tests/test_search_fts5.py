import json
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from trial_retrieval.errors import InvalidConstraint
from trial_retrieval.search.fts5 import FTS5TrialBackend
from trial_retrieval.search.query_builder import (
    ConstrainedQuery,
    GenderMode,
    LexicalClause,
    build_constrained_query,
)


@pytest.fixture
def empty_trials_db(tmp_path: Path) -> str:
    """An FTS5 trial database with schema created but no trials inserted."""
    db_path = str(tmp_path / "test.db")
    FTS5TrialBackend().create_database(db_path)
    return db_path


def _make_trial(
    nct_id: str,
    brief_title: str = "Chemotherapy for breast cancer",
    criteria: str = "Adults with confirmed diagnosis.",
) -> dict[str, Any]:
    return {
        "nct_id": nct_id,
        "brief_title": brief_title,
        "detailed_description": "A randomized study.",
        "criteria": criteria,
        "gender": "All",
        "minimum_age": 18,
        "maximum_age": 65,
    }


def _ids(candidates) -> list[str]:
    return [candidate.doc_id for candidate in candidates]


# ---------- insert ----------


def test_insert_trials_returns_count(empty_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    count = backend.insert_trials(empty_trials_db, [_make_trial("NCT1"), _make_trial("NCT2")])
    assert count == 2
    assert backend.get_trial_count(empty_trials_db) == 2


def test_insert_trials_skips_record_without_id(empty_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    broken = _make_trial("NCT1")
    del broken["nct_id"]
    assert backend.insert_trials(empty_trials_db, [broken, _make_trial("NCT2")]) == 1


def test_reinserting_a_trial_updates_it(empty_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    backend.insert_trials(empty_trials_db, [_make_trial("NCT1", "Old title about asthma")])
    backend.insert_trials(empty_trials_db, [_make_trial("NCT1", "New title about diabetes")])
    assert backend.get_trial_count(empty_trials_db) == 1
    assert _ids(backend.search(empty_trials_db, "diabetes")) == ["NCT1"]
    assert backend.search(empty_trials_db, "asthma") == []


def test_text_is_matched_case_insensitively(empty_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    backend.insert_trials(empty_trials_db, [_make_trial("NCT1", "HEART Failure Registry")])
    assert _ids(backend.search(empty_trials_db, "heart FAILURE")) == ["NCT1"]


# ---------- execute: age filters ----------


def test_age_filters_require_bounds_around_age(tmp_trials_db: str) -> None:
    query = build_constrained_query("cancer", age=30)
    # NCT002 starts at 40, NCT004 at 50, NCT005 has no maximum age
    assert _ids(FTS5TrialBackend().execute(tmp_trials_db, query, 100)) == ["NCT001"]


def test_age_bounds_are_inclusive(tmp_trials_db: str) -> None:
    query = build_constrained_query("asthma", age=17)
    assert _ids(FTS5TrialBackend().execute(tmp_trials_db, query, 100)) == ["NCT003"]
    query = build_constrained_query("asthma", age=18)
    assert FTS5TrialBackend().execute(tmp_trials_db, query, 100) == []


def test_trial_without_age_bound_never_matches_age_filter(tmp_trials_db: str) -> None:
    query = build_constrained_query("survivorship", age=30)
    assert FTS5TrialBackend().execute(tmp_trials_db, query, 100) == []
    assert _ids(FTS5TrialBackend().search(tmp_trials_db, "survivorship")) == ["NCT005"]


# ---------- execute: gender ----------


def test_gender_filter_excludes_other_genders(tmp_trials_db: str) -> None:
    query = build_constrained_query("cancer", age=55, gender="male")
    ids = _ids(FTS5TrialBackend().execute(tmp_trials_db, query, 100))
    assert set(ids) == {"NCT002", "NCT004"}


def test_gender_boost_keeps_other_genders_but_ranks_matches_first(tmp_trials_db: str) -> None:
    query = build_constrained_query(
        "cancer", age=55, gender="male", gender_mode=GenderMode.BOOST, gender_boost=1000.0
    )
    ids = _ids(FTS5TrialBackend().execute(tmp_trials_db, query, 100))
    assert set(ids[:2]) == {"NCT002", "NCT004"}
    assert ids[2:] == ["NCT001"]


# ---------- execute: enumeration ----------


def test_execute_respects_limit(tmp_trials_db: str) -> None:
    query = ConstrainedQuery(must=LexicalClause("cancer", ("brief_title",)))
    assert len(FTS5TrialBackend().execute(tmp_trials_db, query, 2)) == 2


def test_execute_is_deterministic(tmp_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    query = build_constrained_query("cancer therapy")
    first = backend.execute(tmp_trials_db, query, 100)
    second = backend.execute(tmp_trials_db, query, 100)
    assert _ids(first) == _ids(second)
    assert [c.lexical_score for c in first] == [c.lexical_score for c in second]


def test_execute_returns_stored_embeddings(tmp_trials_db: str) -> None:
    query = build_constrained_query("breast", age=30, gender="female")
    candidates = FTS5TrialBackend().execute(tmp_trials_db, query, 100)
    assert len(candidates) == 1
    np.testing.assert_array_equal(candidates[0].embedding, [1.0, 0.0, 0.0])


def test_execute_restricts_to_clause_fields(empty_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    backend.insert_trials(
        empty_trials_db,
        [_make_trial("NCT1", "Unrelated title", criteria="Patients with melanoma")],
    )
    title_only = ConstrainedQuery(must=LexicalClause("melanoma", ("brief_title",)))
    criteria_only = ConstrainedQuery(must=LexicalClause("melanoma", ("criteria",)))
    assert backend.execute(empty_trials_db, title_only, 10) == []
    assert _ids(backend.execute(empty_trials_db, criteria_only, 10)) == ["NCT1"]


def test_punctuation_in_query_text_is_literal(tmp_trials_db: str) -> None:
    ids = _ids(FTS5TrialBackend().search(tmp_trials_db, 'cancer (AND) "NEAR" *'))
    assert "NCT001" in ids


def test_unknown_text_field_raises(tmp_trials_db: str) -> None:
    query = ConstrainedQuery(must=LexicalClause("cancer", ("summary",)))
    with pytest.raises(InvalidConstraint):
        FTS5TrialBackend().execute(tmp_trials_db, query, 10)


# ---------- stored embeddings ----------


def test_get_embedding_returns_vector_or_none(tmp_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    np.testing.assert_array_equal(backend.get_embedding(tmp_trials_db, "NCT002"), [0.0, 1.0, 0.0])
    assert backend.get_embedding(tmp_trials_db, "NCT004") is None
    assert backend.get_embedding(tmp_trials_db, "NCT999") is None


# ---------- vocabulary ----------


def test_document_frequency_counts_trials_per_field(tmp_trials_db: str) -> None:
    backend = FTS5TrialBackend()
    assert backend.document_frequency(tmp_trials_db, "brief_title", "Cancer") == 4
    assert backend.document_frequency(tmp_trials_db, "brief_title", "asthma") == 1
    assert backend.document_frequency(tmp_trials_db, "brief_title", "absent") == 0


def test_document_frequency_rejects_unknown_field(tmp_trials_db: str) -> None:
    with pytest.raises(InvalidConstraint):
        FTS5TrialBackend().document_frequency(tmp_trials_db, "gender", "male")


# ---------- rebuild ----------


def test_rebuild_database_loads_trials_and_embeddings(tmp_path: Path) -> None:
    trials_path = tmp_path / "trials.jsonl"
    trials_path.write_text(
        "\n".join(
            json.dumps(trial)
            for trial in [
                {**_make_trial("NCT1"), "minimum_age": "18 Years", "maximum_age": "N/A"},
                {**_make_trial("NCT2"), "minimum_age": "6 Months", "maximum_age": "17 Years"},
            ]
        )
    )
    embeddings_path = tmp_path / "trial_embeddings.jsonl"
    embeddings_path.write_text(json.dumps({"nct_id": "NCT2", "embedding": [0.1, 0.2]}) + "\n")

    db_path = str(tmp_path / "trials.db")
    backend = FTS5TrialBackend()
    backend.rebuild_database(db_path, trials_path, embeddings_path)

    assert backend.get_trial_count(db_path) == 2
    assert backend.get_embedding(db_path, "NCT1") is None
    assert backend.get_embedding(db_path, "NCT2") is not None
    # "6 Months" normalises to 0 years, so a newborn matches NCT2 only
    query = build_constrained_query("chemotherapy", age=0)
    assert _ids(backend.execute(db_path, query, 10)) == ["NCT2"]
