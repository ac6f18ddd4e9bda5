from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from trial_retrieval.search.query_builder import ConstrainedQuery


@dataclass(frozen=True)
class Query:
    id: int
    text: str
    age: int | None = None
    gender: str | None = None
    embedding: np.ndarray | None = None


@dataclass(frozen=True)
class Candidate:
    doc_id: str
    lexical_score: float
    embedding: np.ndarray | None = None  # None = dropped from rescoring, not demoted


@dataclass(frozen=True)
class ScoredDocument:
    doc_id: str
    score: float


# Rank 1 is the first element; no duplicate doc ids
RankedList = list[ScoredDocument]


class EmbeddingStore(Protocol):
    def get_embedding(self, doc_id: str) -> np.ndarray | None: ...


class ConstrainedSearchBackend(Protocol):
    def execute(
        self, db_path: str, query: "ConstrainedQuery", limit: int
    ) -> list[Candidate]: ...


class StoredEmbeddingBackend(Protocol):
    def get_embedding(self, db_path: str, doc_id: str) -> np.ndarray | None: ...


@dataclass(frozen=True)
class BoundEmbeddingStore:
    """EmbeddingStore over a database-backed index, bound to one database path."""

    backend: StoredEmbeddingBackend
    db_path: str

    def get_embedding(self, doc_id: str) -> np.ndarray | None:
        return self.backend.get_embedding(self.db_path, doc_id)


class EmbeddingTable:
    """Immutable id -> vector table, loaded once and shared read-only across workers.

    Satisfies the EmbeddingStore protocol so it can back either query embeddings
    or stored document embeddings.
    """

    def __init__(self, vectors: Mapping[str, Sequence[float] | np.ndarray]) -> None:
        frozen: dict[str, np.ndarray] = {}
        for key, vector in vectors.items():
            array = np.asarray(vector, dtype=np.float32)
            array.setflags(write=False)
            frozen[str(key)] = array
        self._vectors = MappingProxyType(frozen)

    def get_embedding(self, doc_id: str) -> np.ndarray | None:
        return self._vectors.get(str(doc_id))

    def __contains__(self, key: object) -> bool:
        return str(key) in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def __iter__(self) -> Iterator[str]:
        return iter(self._vectors)

    @property
    def dimensions(self) -> int | None:
        """Dimensionality of the first vector, or None for an empty table."""
        for vector in self._vectors.values():
            return int(vector.shape[0])
        return None
