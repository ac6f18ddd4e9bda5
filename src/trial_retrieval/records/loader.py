import json
import logging
from pathlib import Path
from typing import Any

from trial_retrieval.constants import AGE_UNITS_PER_YEAR, MISSING_AGE_TOKENS
from trial_retrieval.infra.io import load_json
from trial_retrieval.records.schema import (
    FIELD_EMBEDDING,
    FIELD_MAX_AGE,
    FIELD_MIN_AGE,
    FIELD_NCT_ID,
    FIELD_TOPIC_AGE,
    FIELD_TOPIC_GENDER,
    FIELD_TOPIC_NUMBER,
    FIELD_TOPIC_QUERY,
)
from trial_retrieval.search.base import EmbeddingTable, Query
from trial_retrieval.types import TopicRecord, TrialRecord

logger = logging.getLogger(__name__)


def parse_age(value: int | str | None) -> int | None:
    """Normalise an age such as "18 Years" or "6 Months" to whole years.

    Months, weeks and days are converted with integer division. Missing or
    unparseable values ("N/A", "None", "") map to None, as does -1.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value if value >= 0 else None

    text = str(value).strip().lower()
    if text in MISSING_AGE_TOKENS:
        return None
    parts = text.split()
    try:
        number = int(parts[0])
    except ValueError:
        return None
    if number < 0:
        return None
    if len(parts) > 1:
        units_per_year = AGE_UNITS_PER_YEAR.get(parts[1])
        if units_per_year is not None:
            return number // units_per_year
    return number


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as error:
                logger.warning("Skipping malformed JSON in %s:%d: %s", path.name, line_num, error)
    return records


def load_trials(trials_path: str | Path) -> list[TrialRecord]:
    """Load already-parsed trial records from a JSONL file.

    Age bounds are normalised to whole years; records without an nct_id are skipped.
    """
    trials: list[TrialRecord] = []
    for record in _read_jsonl(Path(trials_path)):
        if not record.get(FIELD_NCT_ID):
            logger.warning("Skipping trial record without %s", FIELD_NCT_ID)
            continue
        record[FIELD_MIN_AGE] = parse_age(record.get(FIELD_MIN_AGE))
        record[FIELD_MAX_AGE] = parse_age(record.get(FIELD_MAX_AGE))
        trials.append(record)
    return trials


def load_topics(topics_path: str | Path) -> list[TopicRecord]:
    """Load already-parsed topics from a JSON array or a JSONL file."""
    path = Path(topics_path)
    if path.suffix == ".jsonl":
        raw_topics = _read_jsonl(path)
    else:
        raw_topics = load_json(path)

    topics: list[TopicRecord] = []
    for raw in raw_topics:
        try:
            number = int(raw[FIELD_TOPIC_NUMBER])
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping topic without a numeric %s: %r", FIELD_TOPIC_NUMBER, raw)
            continue
        topics.append(
            {
                FIELD_TOPIC_NUMBER: number,
                FIELD_TOPIC_QUERY: raw.get(FIELD_TOPIC_QUERY) or "",
                FIELD_TOPIC_AGE: parse_age(raw.get(FIELD_TOPIC_AGE)),
                FIELD_TOPIC_GENDER: raw.get(FIELD_TOPIC_GENDER),
            }
        )
    return topics


def load_query_embeddings(embeddings_path: str | Path) -> EmbeddingTable:
    """Load query embeddings from a JSON object keyed by topic id."""
    raw = load_json(embeddings_path)
    return EmbeddingTable({str(topic_id): vector for topic_id, vector in raw.items()})


def load_trial_embeddings(embeddings_path: str | Path) -> EmbeddingTable:
    """Load trial embeddings from JSONL lines of {"nct_id": ..., "embedding": [...]}."""
    vectors: dict[str, list[float]] = {}
    for line_num, record in enumerate(_read_jsonl(Path(embeddings_path)), start=1):
        if FIELD_NCT_ID not in record or FIELD_EMBEDDING not in record:
            logger.warning(
                "Record %d: missing '%s' or '%s'", line_num, FIELD_NCT_ID, FIELD_EMBEDDING
            )
            continue
        vectors[str(record[FIELD_NCT_ID])] = record[FIELD_EMBEDDING]
    logger.info("Loaded %d trial embeddings", len(vectors))
    return EmbeddingTable(vectors)


def attach_embeddings(trials: list[TrialRecord], embeddings: EmbeddingTable) -> int:
    """Copy stored vectors onto trial records in place. Returns how many were attached."""
    attached = 0
    for trial in trials:
        vector = embeddings.get_embedding(trial[FIELD_NCT_ID])
        if vector is not None:
            trial[FIELD_EMBEDDING] = vector.tolist()
            attached += 1
    return attached


def topics_to_queries(
    topics: list[TopicRecord], embeddings: EmbeddingTable | None = None
) -> list[Query]:
    """Build Query objects, attaching each topic's embedding when the table has one."""
    queries: list[Query] = []
    for topic in topics:
        number = topic[FIELD_TOPIC_NUMBER]
        embedding = embeddings.get_embedding(str(number)) if embeddings is not None else None
        queries.append(
            Query(
                id=number,
                text=topic.get(FIELD_TOPIC_QUERY, ""),
                age=topic.get(FIELD_TOPIC_AGE),
                gender=topic.get(FIELD_TOPIC_GENDER),
                embedding=embedding,
            )
        )
    return queries
