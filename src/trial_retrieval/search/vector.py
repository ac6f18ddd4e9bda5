import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

import numpy as np
import sqlite_vec

from trial_retrieval.constants import DEFAULT_VECTOR_LIMIT
from trial_retrieval.records.loader import load_trial_embeddings
from trial_retrieval.records.schema import FIELD_DISTANCE, FIELD_NCT_ID
from trial_retrieval.search.base import BoundEmbeddingStore, EmbeddingTable, ScoredDocument
from trial_retrieval.search.db_utils import deserialize_f32, serialize_f32

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_DIMENSIONS = 768


def _load_sqlite_vec(conn: sqlite3.Connection) -> None:
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)


@contextmanager
def get_db_connection(db_path: str) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path)
    _load_sqlite_vec(conn)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class VectorTrialBackend:
    """Dense trial index using sqlite-vec over brief-title embeddings.

    Serves the vector-only baseline (KNN by cosine distance) and, through
    `embedding_store`, stored-vector lookups for rescoring.

    Args:
        vector_dimensions: Embedding size of the stored vectors.
    """

    def __init__(self, vector_dimensions: int = DEFAULT_VECTOR_DIMENSIONS) -> None:
        self.vector_dimensions = vector_dimensions

    def create_database(self, db_path: str) -> None:
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DROP TABLE IF EXISTS vec_trials")
            cursor.execute(f"""
                CREATE VIRTUAL TABLE vec_trials USING vec0(
                    {FIELD_NCT_ID} TEXT PRIMARY KEY,
                    title_embedding float[{self.vector_dimensions}] distance_metric=cosine
                )
            """)

    def insert_embeddings(self, db_path: str, embeddings: EmbeddingTable) -> int:
        """Insert one vector per trial. Vectors of the wrong size are skipped.

        Returns:
            Number of vectors inserted.
        """
        inserted = 0
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            for nct_id in embeddings:
                vector = embeddings.get_embedding(nct_id)
                if vector is None or vector.shape[0] != self.vector_dimensions:
                    logger.warning(
                        "Skipping %s: expected %d dimensions", nct_id, self.vector_dimensions
                    )
                    continue
                try:
                    cursor.execute(f"DELETE FROM vec_trials WHERE {FIELD_NCT_ID} = ?", (nct_id,))
                    cursor.execute(
                        f"INSERT INTO vec_trials ({FIELD_NCT_ID}, title_embedding) VALUES (?, ?)",
                        (nct_id, serialize_f32(vector)),
                    )
                    inserted += 1
                except sqlite3.Error as error:
                    logger.warning("Skipping %s: %s", nct_id, error)
        return inserted

    def search(
        self,
        db_path: str,
        query_embedding: Sequence[float] | np.ndarray,
        limit: int = DEFAULT_VECTOR_LIMIT,
    ) -> list[ScoredDocument]:
        """K-nearest-neighbour search by cosine distance.

        Returns:
            ScoredDocuments sorted by distance ascending, scored as 1 - distance.
        """
        with get_db_connection(db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {FIELD_NCT_ID}, distance AS {FIELD_DISTANCE}
                FROM vec_trials
                WHERE title_embedding MATCH ?
                    AND k = ?
                ORDER BY distance
                """,
                (serialize_f32(query_embedding), limit),
            )
            return [
                ScoredDocument(doc_id=row[FIELD_NCT_ID], score=1.0 - row[FIELD_DISTANCE])
                for row in cursor.fetchall()
            ]

    def get_embedding(self, db_path: str, doc_id: str) -> np.ndarray | None:
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT title_embedding FROM vec_trials WHERE {FIELD_NCT_ID} = ?",
                (doc_id,),
            )
            row = cursor.fetchone()
            return deserialize_f32(row[0]) if row else None

    def embedding_store(self, db_path: str) -> BoundEmbeddingStore:
        return BoundEmbeddingStore(self, db_path)

    def get_vector_count(self, db_path: str) -> int:
        with get_db_connection(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM vec_trials")
            return cursor.fetchone()[0]

    def rebuild_database(self, db_path: str, embeddings_path: str | Path) -> None:
        print(f"Creating vector database at {db_path}...")
        self.create_database(db_path)

        print(f"Loading trial embeddings from {embeddings_path}...")
        embeddings = load_trial_embeddings(embeddings_path)
        print(f"Found {len(embeddings)} embeddings")

        count = self.insert_embeddings(db_path, embeddings)
        print(f"Inserted {count} vectors (dim={self.vector_dimensions}) into database")
