import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np

from trial_retrieval.constants import (
    DEFAULT_GENDER_BOOST,
    DEFAULT_MAX_WORKERS,
    DEFAULT_OUTPUT_SIZE,
    DEFAULT_POOL_SIZE,
    DEFAULT_TEXT_FIELDS,
)
from trial_retrieval.errors import (
    DimensionMismatch,
    InvalidConstraint,
    MissingEmbedding,
    RetrievalFailure,
)
from trial_retrieval.search.base import (
    ConstrainedSearchBackend,
    EmbeddingStore,
    Query,
    RankedList,
)
from trial_retrieval.search.query_builder import (
    ConstrainedQuery,
    GenderMode,
    build_constrained_query,
)
from trial_retrieval.search.rescorer import rank_candidates
from trial_retrieval.types import OutcomeStatus

logger = logging.getLogger(__name__)


@dataclass
class RetrievalConfig:
    pool_size: int = DEFAULT_POOL_SIZE
    output_size: int = DEFAULT_OUTPUT_SIZE
    text_fields: tuple[str, ...] = DEFAULT_TEXT_FIELDS
    gender_mode: GenderMode = GenderMode.FILTER
    gender_boost: float = DEFAULT_GENDER_BOOST
    max_workers: int = DEFAULT_MAX_WORKERS


@dataclass
class RetrievalOutcome:
    """Result of retrieving one query within a batch."""

    query_id: int
    status: OutcomeStatus
    ranked: RankedList = field(default_factory=list)
    reason: str | None = None
    candidate_count: int = 0


class TwoStageRetriever:
    """Constrained lexical retrieval followed by embedding rescoring.

    Stage one asks the backend for a broad candidate pool; its scores only
    decide enumeration order. Stage two reorders the pool by dot product with
    the query embedding and keeps the top `output_size`.

    Args:
        backend: Executes constrained queries. It must open its own connection
            per call so that concurrent workers never share a handle.
        db_path: Database the backend searches.
        config: Pool/output sizes, text fields, gender semantics and worker count.
        query_embeddings: Fallback lookup (by str(query id)) for queries that do
            not carry an embedding themselves.
        embedding_store: Fallback lookup for candidates returned without a vector.
    """

    def __init__(
        self,
        backend: ConstrainedSearchBackend,
        db_path: str,
        config: RetrievalConfig | None = None,
        query_embeddings: EmbeddingStore | None = None,
        embedding_store: EmbeddingStore | None = None,
    ) -> None:
        self.backend = backend
        self.db_path = db_path
        self.config = config or RetrievalConfig()
        self.query_embeddings = query_embeddings
        self.embedding_store = embedding_store

    def build_query(self, query: Query) -> ConstrainedQuery:
        return build_constrained_query(
            query.text,
            age=query.age,
            gender=query.gender,
            fields=self.config.text_fields,
            gender_mode=self.config.gender_mode,
            gender_boost=self.config.gender_boost,
        )

    def query_embedding(self, query: Query) -> np.ndarray | None:
        if query.embedding is not None:
            return np.asarray(query.embedding, dtype=np.float32)
        if self.query_embeddings is not None:
            return self.query_embeddings.get_embedding(str(query.id))
        return None

    def skip_reason(self, query: Query) -> str | None:
        """Why a query cannot go through the full pipeline, or None if it can."""
        if query.age is None:
            return "no usable age"
        if not query.text or not query.text.strip():
            return "no query text"
        if self.query_embedding(query) is None:
            return "no query embedding"
        return None

    def retrieve(self, query: Query) -> RankedList:
        """Run both stages for one query.

        Raises:
            MissingEmbedding: If the query has no embedding.
            InvalidConstraint: If the query has no usable age or text, or its
                constraints are malformed.
            DimensionMismatch: If no candidate vector has the query embedding's size.
            RetrievalFailure: If the backend call or a stored-vector lookup fails.
        """
        reason = self.skip_reason(query)
        if reason == "no query embedding":
            raise MissingEmbedding(query.id)
        if reason is not None:
            raise InvalidConstraint(f"Query {query.id} has {reason}")

        ranked, _ = self._run_pipeline(query)
        return ranked

    def _run_pipeline(self, query: Query) -> tuple[RankedList, int]:
        constrained_query = self.build_query(query)
        logger.debug("Query %s constrained as %s", query.id, constrained_query.to_dict())

        try:
            candidates = self.backend.execute(self.db_path, constrained_query, self.config.pool_size)
        except InvalidConstraint:
            raise
        except Exception as error:
            raise RetrievalFailure(query.id, error) from error

        query_vector = self.query_embedding(query)
        try:
            ranked = rank_candidates(
                query_vector,
                candidates,
                top_n=self.config.output_size,
                embedding_store=self.embedding_store,
            )
        except DimensionMismatch:
            raise
        except Exception as error:
            raise RetrievalFailure(query.id, error) from error
        return ranked, len(candidates)

    def retrieve_outcome(self, query: Query) -> RetrievalOutcome:
        """Retrieve one query, converting skips and failures into an outcome."""
        reason = self.skip_reason(query)
        if reason is not None:
            logger.warning("Skipping query %s: %s", query.id, reason)
            return RetrievalOutcome(query_id=query.id, status="skipped", reason=reason)

        try:
            ranked, candidate_count = self._run_pipeline(query)
        except DimensionMismatch as error:
            logger.warning("Skipping query %s: %s", query.id, error)
            return RetrievalOutcome(query_id=query.id, status="skipped", reason=str(error))
        except (InvalidConstraint, RetrievalFailure) as error:
            logger.warning("Query %s failed: %s", query.id, error)
            return RetrievalOutcome(query_id=query.id, status="failed", reason=str(error))

        return RetrievalOutcome(
            query_id=query.id,
            status="ranked",
            ranked=ranked,
            candidate_count=candidate_count,
        )

    def retrieve_all(self, queries: list[Query]) -> list[RetrievalOutcome]:
        """Retrieve every query on a bounded thread pool.

        Returns:
            One outcome per query, in the order the queries were given,
            regardless of completion order.
        """
        total = len(queries)
        outcomes_by_index: dict[int, RetrievalOutcome] = {}
        completed_count = 0

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {
                executor.submit(self.retrieve_outcome, query): index
                for index, query in enumerate(queries)
            }
            for future in as_completed(futures):
                index = futures[future]
                outcome = future.result()
                outcomes_by_index[index] = outcome

                completed_count += 1
                logger.info(
                    "[%d/%d] query %s: %s (%d results)",
                    completed_count,
                    total,
                    outcome.query_id,
                    outcome.status,
                    len(outcome.ranked),
                )

        outcomes = [outcomes_by_index[index] for index in range(total)]
        ranked_count = sum(1 for outcome in outcomes if outcome.status == "ranked")
        logger.info("Ranked %d/%d queries", ranked_count, total)
        return outcomes
