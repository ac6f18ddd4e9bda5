"""Constrained query construction.

A constrained query combines a mandatory free-text clause with demographic
constraints: two open-ended age range filters and an optional gender clause.
The result is a plain description that a search backend translates into its
own query language (see `FTS5TrialBackend.execute`).
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from trial_retrieval.constants import (
    DEFAULT_GENDER_BOOST,
    DEFAULT_TEXT_FIELDS,
    GENDER_ALL,
    VALID_GENDERS,
)
from trial_retrieval.errors import InvalidConstraint
from trial_retrieval.records.schema import FIELD_GENDER, FIELD_MAX_AGE, FIELD_MIN_AGE

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class Occur(Enum):
    MUST = "must"
    FILTER = "filter"
    SHOULD = "should"


class GenderMode(Enum):
    """How the gender clause participates in the query.

    FILTER: candidates whose stored gender is neither the requested one nor
        "all" are excluded.
    BOOST: the clause is optional; matching candidates rank higher in the
        stage-one pool but non-matching candidates stay retrievable.
    """

    FILTER = "filter"
    BOOST = "boost"


@dataclass(frozen=True)
class LexicalClause:
    text: str
    fields: tuple[str, ...]
    occur: Occur = Occur.MUST

    def tokens(self) -> list[str]:
        return _TOKEN_PATTERN.findall(self.text.lower())


@dataclass(frozen=True)
class RangeFilter:
    """Inclusive integer range; a None bound is unbounded on that side."""

    field: str
    lower: int | None = None
    upper: int | None = None
    occur: Occur = Occur.FILTER

    def matches(self, value: int | None) -> bool:
        # A record without the field never satisfies a range
        if value is None:
            return False
        if self.lower is not None and value < self.lower:
            return False
        if self.upper is not None and value > self.upper:
            return False
        return True


@dataclass(frozen=True)
class GenderClause:
    values: tuple[str, ...]
    occur: Occur
    boost: float = DEFAULT_GENDER_BOOST
    field: str = FIELD_GENDER

    def matches(self, value: str | None) -> bool:
        return value is not None and value.lower() in self.values


@dataclass(frozen=True)
class ConstrainedQuery:
    must: LexicalClause
    filters: tuple[RangeFilter, ...] = field(default_factory=tuple)
    gender: GenderClause | None = None

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view, used for logging and run metadata."""
        return {
            "must": {"text": self.must.text, "fields": list(self.must.fields)},
            "filters": [
                {"field": range_filter.field, "lower": range_filter.lower, "upper": range_filter.upper}
                for range_filter in self.filters
            ],
            "gender": (
                {
                    "field": self.gender.field,
                    "values": list(self.gender.values),
                    "occur": self.gender.occur.value,
                    "boost": self.gender.boost,
                }
                if self.gender
                else None
            ),
        }


def normalize_gender(token: str | None) -> str | None:
    """Lower-case and validate a gender token.

    Returns None when there is no restriction (token absent, blank or "all").

    Raises:
        InvalidConstraint: If the token is not one of male/female/all.
    """
    if token is None:
        return None
    normalized = token.strip().lower()
    if not normalized or normalized == GENDER_ALL:
        return None
    if normalized not in VALID_GENDERS:
        raise InvalidConstraint(f"Unrecognized gender token: {token!r}")
    return normalized


def build_constrained_query(
    text: str,
    age: int | None = None,
    gender: str | None = None,
    fields: tuple[str, ...] = DEFAULT_TEXT_FIELDS,
    gender_mode: GenderMode = GenderMode.FILTER,
    gender_boost: float = DEFAULT_GENDER_BOOST,
) -> ConstrainedQuery:
    """Build a constrained query from free text plus demographic constraints.

    Args:
        text: Raw query text, matched against every field in `fields`.
        age: Patient age in years. When given, adds a filter requiring the
            stored minimum age <= age and another requiring the stored
            maximum age >= age.
        gender: Gender token (case-insensitive). "all" or None means no restriction.
        fields: Text fields searched by the lexical clause.
        gender_mode: Whether the gender clause filters or only boosts.
        gender_boost: Score bonus for matching candidates in BOOST mode.

    Returns:
        ConstrainedQuery describing the lexical clause, filters and gender clause.

    Raises:
        InvalidConstraint: On a negative age, an unknown gender token, an empty
            field list or text without any searchable token.
    """
    if not fields:
        raise InvalidConstraint("At least one text field is required")
    lexical = LexicalClause(text=text, fields=tuple(fields))
    if not lexical.tokens():
        raise InvalidConstraint(f"Query text has no searchable terms: {text!r}")

    filters: tuple[RangeFilter, ...] = ()
    if age is not None:
        if isinstance(age, bool) or not isinstance(age, int):
            raise InvalidConstraint(f"Age must be an integer, got {age!r}")
        if age < 0:
            raise InvalidConstraint(f"Age must be non-negative, got {age}")
        filters = (
            RangeFilter(field=FIELD_MIN_AGE, lower=None, upper=age),
            RangeFilter(field=FIELD_MAX_AGE, lower=age, upper=None),
        )

    gender_clause = None
    normalized_gender = normalize_gender(gender)
    if normalized_gender is not None:
        occur = Occur.FILTER if gender_mode is GenderMode.FILTER else Occur.SHOULD
        gender_clause = GenderClause(
            values=(normalized_gender, GENDER_ALL),
            occur=occur,
            boost=gender_boost,
        )

    return ConstrainedQuery(must=lexical, filters=filters, gender=gender_clause)


def to_fts5_match(clause: LexicalClause) -> str:
    """Render a lexical clause as an FTS5 MATCH expression.

    Every token is quoted so operators and punctuation in free text are taken
    literally; tokens are OR-ed and restricted to the clause's columns.
    """
    tokens = clause.tokens()
    if not tokens:
        raise InvalidConstraint(f"Query text has no searchable terms: {clause.text!r}")
    terms = " OR ".join(f'"{token}"' for token in tokens)
    columns = " ".join(clause.fields)
    return f"{{{columns}}} : ({terms})"
