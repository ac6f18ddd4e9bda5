import logging
from collections.abc import Sequence

import numpy as np

from trial_retrieval.errors import DimensionMismatch
from trial_retrieval.search.base import Candidate, EmbeddingStore, RankedList, ScoredDocument

logger = logging.getLogger(__name__)


def rescore_candidates(
    query_embedding: Sequence[float] | np.ndarray,
    candidates: list[Candidate],
    embedding_store: EmbeddingStore | None = None,
) -> RankedList:
    """Rescore a candidate pool by dot product with the query embedding.

    No normalisation is applied; vectors must be normalised upstream for
    cosine semantics. A candidate's own embedding is used when present,
    otherwise `embedding_store` is consulted. Candidates with no vector, or a
    vector whose size differs from the query's, are dropped from the output.
    Repeated doc ids keep their first occurrence.

    Raises:
        DimensionMismatch: If candidates carried vectors but none of them had
            the query embedding's size.

    Returns:
        ScoredDocuments by similarity descending. Python's sort is stable, so
        ties keep the order in which candidates were enumerated.
    """
    query_vector = np.asarray(query_embedding, dtype=np.float32)
    dimensions = query_vector.shape[0]

    doc_ids: list[str] = []
    vectors: list[np.ndarray] = []
    seen_ids: set[str] = set()
    mismatched_dimensions: set[int] = set()

    for candidate in candidates:
        if candidate.doc_id in seen_ids:
            continue
        vector = candidate.embedding
        if vector is None and embedding_store is not None:
            vector = embedding_store.get_embedding(candidate.doc_id)
        if vector is None:
            logger.debug("Dropping %s: no stored embedding", candidate.doc_id)
            continue
        vector = np.asarray(vector, dtype=np.float32)
        if vector.shape[0] != dimensions:
            logger.debug(
                "Dropping %s: embedding has %d dimensions, query has %d",
                candidate.doc_id,
                vector.shape[0],
                dimensions,
            )
            mismatched_dimensions.add(vector.shape[0])
            continue
        seen_ids.add(candidate.doc_id)
        doc_ids.append(candidate.doc_id)
        vectors.append(vector)

    if not vectors:
        if mismatched_dimensions:
            raise DimensionMismatch(dimensions, mismatched_dimensions)
        return []

    scores = np.stack(vectors) @ query_vector
    scored = [ScoredDocument(doc_id, float(score)) for doc_id, score in zip(doc_ids, scores, strict=True)]
    return sorted(scored, key=lambda document: document.score, reverse=True)


def rank_candidates(
    query_embedding: Sequence[float] | np.ndarray,
    candidates: list[Candidate],
    top_n: int,
    embedding_store: EmbeddingStore | None = None,
) -> RankedList:
    """Rescore candidates and keep the top `top_n`."""
    return rescore_candidates(query_embedding, candidates, embedding_store)[:top_n]
