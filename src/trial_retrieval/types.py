from typing import Literal, NotRequired, TypedDict

# ---------------------------------------------------------------------------
# Parsed record types (produced upstream, consumed here)
# ---------------------------------------------------------------------------


class TrialRecord(TypedDict):
    nct_id: str
    brief_title: str
    detailed_description: NotRequired[str]
    criteria: NotRequired[str]
    gender: NotRequired[str]
    minimum_age: NotRequired[int | str | None]
    maximum_age: NotRequired[int | str | None]
    embedding: NotRequired[list[float]]


class TopicRecord(TypedDict):
    number: int
    query: str
    age: NotRequired[int | None]
    gender: NotRequired[str | None]


# ---------------------------------------------------------------------------
# Evaluation types
# ---------------------------------------------------------------------------


class QueryMetricsDict(TypedDict):
    query_id: str
    k: int
    precision: float
    recall: float
    average_precision: float
    dcg: float
    ideal_dcg: float
    ndcg: float


class AggregateMetricsDict(TypedDict):
    num_queries: int
    precision: float
    recall: float
    average_precision: float
    ndcg: float


# ---------------------------------------------------------------------------
# TypeAliases
# ---------------------------------------------------------------------------

# queryId -> docId -> relevance grade (only grades > 0 are kept)
JudgmentTable = dict[str, dict[str, int]]

# queryId -> docIds in rank order
RunTable = dict[str, list[str]]

OutcomeStatus = Literal["ranked", "skipped", "failed"]
