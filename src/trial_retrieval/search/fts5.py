import logging
import sqlite3
from pathlib import Path
from typing import Any

import numpy as np

from trial_retrieval.constants import DEFAULT_LEXICAL_LIMIT, DEFAULT_TEXT_FIELDS
from trial_retrieval.errors import InvalidConstraint
from trial_retrieval.records.loader import attach_embeddings, load_trial_embeddings, load_trials
from trial_retrieval.records.schema import (
    FIELD_BRIEF_TITLE,
    FIELD_CRITERIA,
    FIELD_DETAILED_DESCRIPTION,
    FIELD_EMBEDDING,
    FIELD_GENDER,
    FIELD_LEXICAL_SCORE,
    FIELD_MAX_AGE,
    FIELD_MIN_AGE,
    FIELD_NCT_ID,
)
from trial_retrieval.search.base import Candidate, ScoredDocument
from trial_retrieval.search.db_utils import deserialize_f32, get_db_connection, serialize_f32
from trial_retrieval.search.query_builder import (
    ConstrainedQuery,
    LexicalClause,
    Occur,
    to_fts5_match,
)

logger = logging.getLogger(__name__)

TEXT_COLUMNS: tuple[str, ...] = (FIELD_BRIEF_TITLE, FIELD_DETAILED_DESCRIPTION, FIELD_CRITERIA)
RANGE_COLUMNS: frozenset[str] = frozenset({FIELD_MIN_AGE, FIELD_MAX_AGE})


def _lower_or_none(value: Any) -> str | None:
    return str(value).lower() if value is not None else None


class FTS5TrialBackend:
    """Trial index backed by SQLite FTS5, with integer age bounds and stored vectors.

    Executes constrained queries for stage-one retrieval. Each call opens its
    own connection, so one instance can be shared by concurrent workers.
    """

    def create_database(self, db_path: str) -> None:
        """Create the trials table, its FTS5 index and the vocabulary view.

        Triggers keep the FTS5 index in sync with the trials table.
        """
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("DROP TABLE IF EXISTS trials_vocab")
            cursor.execute("DROP TABLE IF EXISTS trials_fts")
            cursor.execute("DROP TABLE IF EXISTS trials")

            cursor.execute(f"""
                CREATE TABLE trials (
                    {FIELD_NCT_ID} TEXT PRIMARY KEY,
                    {FIELD_BRIEF_TITLE} TEXT,
                    {FIELD_DETAILED_DESCRIPTION} TEXT,
                    {FIELD_CRITERIA} TEXT,
                    {FIELD_GENDER} TEXT,
                    {FIELD_MIN_AGE} INTEGER,
                    {FIELD_MAX_AGE} INTEGER,
                    {FIELD_EMBEDDING} BLOB
                )
            """)

            cursor.execute(f"""
                CREATE VIRTUAL TABLE trials_fts USING fts5(
                    {FIELD_BRIEF_TITLE},
                    {FIELD_DETAILED_DESCRIPTION},
                    {FIELD_CRITERIA},
                    {FIELD_NCT_ID} UNINDEXED
                )
            """)

            cursor.execute("CREATE VIRTUAL TABLE trials_vocab USING fts5vocab(trials_fts, 'col')")

            text_columns = ", ".join(TEXT_COLUMNS)
            new_columns = ", ".join(f"new.{column}" for column in TEXT_COLUMNS)

            cursor.execute(f"""
                CREATE TRIGGER trials_ai AFTER INSERT ON trials BEGIN
                    INSERT INTO trials_fts({text_columns}, {FIELD_NCT_ID})
                    VALUES ({new_columns}, new.{FIELD_NCT_ID});
                END
            """)

            cursor.execute(f"""
                CREATE TRIGGER trials_ad AFTER DELETE ON trials BEGIN
                    DELETE FROM trials_fts WHERE {FIELD_NCT_ID} = old.{FIELD_NCT_ID};
                END
            """)

            cursor.execute(f"""
                CREATE TRIGGER trials_au AFTER UPDATE ON trials BEGIN
                    DELETE FROM trials_fts WHERE {FIELD_NCT_ID} = old.{FIELD_NCT_ID};
                    INSERT INTO trials_fts({text_columns}, {FIELD_NCT_ID})
                    VALUES ({new_columns}, new.{FIELD_NCT_ID});
                END
            """)

    def insert_trials(self, db_path: str, trials: list[dict[str, Any]]) -> int:
        """Insert or update trials. Text and gender are lower-cased before storage.

        Args:
            db_path: Path to the SQLite database file.
            trials: Trial dicts with nct_id, text fields, gender, integer age
                bounds and an optional embedding.

        Returns:
            Number of trials successfully written.
        """
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            inserted = 0

            for trial in trials:
                embedding = trial.get(FIELD_EMBEDDING)
                try:
                    cursor.execute(
                        f"""
                        INSERT INTO trials
                        ({FIELD_NCT_ID}, {FIELD_BRIEF_TITLE}, {FIELD_DETAILED_DESCRIPTION},
                         {FIELD_CRITERIA}, {FIELD_GENDER}, {FIELD_MIN_AGE}, {FIELD_MAX_AGE},
                         {FIELD_EMBEDDING})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT({FIELD_NCT_ID}) DO UPDATE SET
                            {FIELD_BRIEF_TITLE} = excluded.{FIELD_BRIEF_TITLE},
                            {FIELD_DETAILED_DESCRIPTION} = excluded.{FIELD_DETAILED_DESCRIPTION},
                            {FIELD_CRITERIA} = excluded.{FIELD_CRITERIA},
                            {FIELD_GENDER} = excluded.{FIELD_GENDER},
                            {FIELD_MIN_AGE} = excluded.{FIELD_MIN_AGE},
                            {FIELD_MAX_AGE} = excluded.{FIELD_MAX_AGE},
                            {FIELD_EMBEDDING} = excluded.{FIELD_EMBEDDING}
                        """,
                        (
                            trial[FIELD_NCT_ID],
                            _lower_or_none(trial.get(FIELD_BRIEF_TITLE)),
                            _lower_or_none(trial.get(FIELD_DETAILED_DESCRIPTION)),
                            _lower_or_none(trial.get(FIELD_CRITERIA)),
                            _lower_or_none(trial.get(FIELD_GENDER)),
                            trial.get(FIELD_MIN_AGE),
                            trial.get(FIELD_MAX_AGE),
                            serialize_f32(embedding) if embedding is not None else None,
                        ),
                    )
                    inserted += 1
                except (KeyError, sqlite3.Error) as error:
                    logger.warning("Skipping trial %s: %s", trial.get(FIELD_NCT_ID, "?"), error)

        return inserted

    def execute(self, db_path: str, query: ConstrainedQuery, limit: int) -> list[Candidate]:
        """Run a constrained query and return at most `limit` candidates.

        Candidates are enumerated by lexical score (negated BM25, plus the gender
        boost in soft-boost mode) descending, then by insertion order, so the
        enumeration is deterministic for a fixed index.

        Raises:
            InvalidConstraint: If the query references unknown columns.
        """
        unknown_fields = set(query.must.fields) - set(TEXT_COLUMNS)
        if unknown_fields:
            raise InvalidConstraint(f"Unknown text fields: {sorted(unknown_fields)}")

        score_sql = "-bm25(trials_fts)"
        score_params: list[Any] = []
        where_clauses = ["trials_fts MATCH ?"]
        where_params: list[Any] = [to_fts5_match(query.must)]

        for range_filter in query.filters:
            if range_filter.field not in RANGE_COLUMNS:
                raise InvalidConstraint(f"Unknown range field: {range_filter.field}")
            column = f"t.{range_filter.field}"
            where_clauses.append(f"{column} IS NOT NULL")
            if range_filter.lower is not None:
                where_clauses.append(f"{column} >= ?")
                where_params.append(range_filter.lower)
            if range_filter.upper is not None:
                where_clauses.append(f"{column} <= ?")
                where_params.append(range_filter.upper)

        if query.gender is not None:
            placeholders = ", ".join("?" for _ in query.gender.values)
            gender_match = f"t.{FIELD_GENDER} IN ({placeholders})"
            if query.gender.occur is Occur.SHOULD:
                score_sql += f" + CASE WHEN {gender_match} THEN ? ELSE 0 END"
                score_params.extend([*query.gender.values, query.gender.boost])
            else:
                where_clauses.append(gender_match)
                where_params.extend(query.gender.values)

        with get_db_connection(db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT t.{FIELD_NCT_ID}, t.{FIELD_EMBEDDING},
                       {score_sql} AS {FIELD_LEXICAL_SCORE}
                FROM trials_fts
                JOIN trials t ON t.{FIELD_NCT_ID} = trials_fts.{FIELD_NCT_ID}
                WHERE {" AND ".join(where_clauses)}
                ORDER BY {FIELD_LEXICAL_SCORE} DESC, t.rowid
                LIMIT ?
                """,
                (*score_params, *where_params, limit),
            )

            return [
                Candidate(
                    doc_id=row[FIELD_NCT_ID],
                    lexical_score=float(row[FIELD_LEXICAL_SCORE]),
                    embedding=deserialize_f32(row[FIELD_EMBEDDING]),
                )
                for row in cursor.fetchall()
            ]

    def search(
        self,
        db_path: str,
        query_text: str,
        limit: int = DEFAULT_LEXICAL_LIMIT,
        fields: tuple[str, ...] = DEFAULT_TEXT_FIELDS,
    ) -> list[ScoredDocument]:
        """Lexical-only search over the text fields, without demographic filters."""
        clause = LexicalClause(text=query_text, fields=fields)
        candidates = self.execute(db_path, ConstrainedQuery(must=clause), limit)
        return [ScoredDocument(candidate.doc_id, candidate.lexical_score) for candidate in candidates]

    def get_embedding(self, db_path: str, doc_id: str) -> np.ndarray | None:
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {FIELD_EMBEDDING} FROM trials WHERE {FIELD_NCT_ID} = ?",
                (doc_id,),
            )
            row = cursor.fetchone()
            return deserialize_f32(row[0]) if row else None

    def get_trial_count(self, db_path: str) -> int:
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM trials")
            return cursor.fetchone()[0]

    def document_frequency(self, db_path: str, field: str, term: str) -> int:
        """Number of trials whose `field` contains `term`."""
        if field not in TEXT_COLUMNS:
            raise InvalidConstraint(f"Unknown text field: {field}")
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT doc FROM trials_vocab WHERE term = ? AND col = ?",
                (term.lower(), field),
            )
            row = cursor.fetchone()
            return row[0] if row else 0

    def rebuild_database(
        self,
        db_path: str,
        trials_path: str | Path,
        embeddings_path: str | Path | None = None,
    ) -> None:
        """Rebuild the index from a trials JSONL file and optional trial embeddings."""
        print(f"Creating database at {db_path}...")
        self.create_database(db_path)

        print(f"Loading trials from {trials_path}...")
        trials = load_trials(trials_path)
        print(f"Found {len(trials)} trials")

        if embeddings_path is not None:
            attached = attach_embeddings(trials, load_trial_embeddings(embeddings_path))
            print(f"Attached embeddings to {attached}/{len(trials)} trials")

        print("Inserting trials...")
        count = self.insert_trials(db_path, trials)
        print(f"Inserted {count} trials into database")
