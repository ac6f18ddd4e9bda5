class InvalidConstraint(ValueError):
    """Malformed filter input for a constrained query (caller error)."""


class MissingEmbedding(LookupError):
    """A query or candidate has no usable vector."""

    def __init__(self, query_id: int | str, message: str | None = None):
        self.query_id = query_id
        super().__init__(message or f"No embedding available for query {query_id}")


class MalformedRecord(ValueError):
    """An unparseable line in a run or judgment file."""

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line!r}")


class RetrievalFailure(RuntimeError):
    """Searching or rescoring failed for a single query."""

    def __init__(self, query_id: int | str, cause: BaseException):
        self.query_id = query_id
        self.cause = cause
        super().__init__(f"Retrieval failed for query {query_id}: {cause}")


class DimensionMismatch(LookupError):
    """Every candidate vector has a different size from the query embedding."""

    def __init__(self, query_dimensions: int, candidate_dimensions: set[int]):
        self.query_dimensions = query_dimensions
        self.candidate_dimensions = candidate_dimensions
        sizes = ", ".join(str(size) for size in sorted(candidate_dimensions))
        super().__init__(
            f"query embedding has {query_dimensions} dimensions, candidate embeddings have {sizes}"
        )
