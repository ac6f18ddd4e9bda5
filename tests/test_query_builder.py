import pytest

from trial_retrieval.errors import InvalidConstraint
from trial_retrieval.search.query_builder import (
    GenderMode,
    LexicalClause,
    Occur,
    RangeFilter,
    build_constrained_query,
    normalize_gender,
    to_fts5_match,
)


# ---------- lexical clause ----------


def test_lexical_clause_is_must_over_configured_fields() -> None:
    query = build_constrained_query("lung cancer", fields=("brief_title", "criteria"))
    assert query.must.occur is Occur.MUST
    assert query.must.fields == ("brief_title", "criteria")
    assert query.must.text == "lung cancer"


def test_empty_field_list_raises() -> None:
    with pytest.raises(InvalidConstraint):
        build_constrained_query("lung cancer", fields=())


def test_text_without_word_tokens_raises() -> None:
    with pytest.raises(InvalidConstraint):
        build_constrained_query("?! -- ()")


def test_tokens_are_lowercased_words() -> None:
    clause = LexicalClause(text="Type-2 Diabetes, (AND) obesity", fields=("brief_title",))
    assert clause.tokens() == ["type", "2", "diabetes", "and", "obesity"]


# ---------- age filters ----------


def test_age_adds_two_open_ended_filters() -> None:
    query = build_constrained_query("asthma", age=30)
    assert query.filters == (
        RangeFilter(field="minimum_age", lower=None, upper=30),
        RangeFilter(field="maximum_age", lower=30, upper=None),
    )
    assert all(range_filter.occur is Occur.FILTER for range_filter in query.filters)


def test_no_age_adds_no_filters() -> None:
    assert build_constrained_query("asthma").filters == ()


def test_zero_age_is_valid() -> None:
    query = build_constrained_query("neonatal jaundice", age=0)
    assert query.filters[0].upper == 0


def test_negative_age_raises() -> None:
    with pytest.raises(InvalidConstraint):
        build_constrained_query("asthma", age=-1)


def test_non_integer_age_raises() -> None:
    with pytest.raises(InvalidConstraint):
        build_constrained_query("asthma", age="30")


def test_range_filter_never_matches_missing_value() -> None:
    range_filter = RangeFilter(field="maximum_age", lower=30)
    assert range_filter.matches(None) is False
    assert range_filter.matches(30) is True
    assert range_filter.matches(29) is False


# ---------- gender clause ----------


def test_gender_filter_accepts_requested_gender_or_all() -> None:
    query = build_constrained_query("asthma", gender="Female")
    assert query.gender is not None
    assert query.gender.values == ("female", "all")
    assert query.gender.occur is Occur.FILTER


def test_gender_boost_mode_makes_clause_optional() -> None:
    query = build_constrained_query(
        "asthma", gender="male", gender_mode=GenderMode.BOOST, gender_boost=2.5
    )
    assert query.gender is not None
    assert query.gender.occur is Occur.SHOULD
    assert query.gender.boost == 2.5


@pytest.mark.parametrize("token", [None, "", "  ", "all", "ALL"])
def test_gender_without_restriction_adds_no_clause(token: str | None) -> None:
    assert build_constrained_query("asthma", gender=token).gender is None


def test_unknown_gender_token_raises() -> None:
    with pytest.raises(InvalidConstraint):
        build_constrained_query("asthma", gender="unknown")


def test_normalize_gender_is_case_insensitive() -> None:
    assert normalize_gender(" MALE ") == "male"


def test_gender_clause_matches_stored_values() -> None:
    clause = build_constrained_query("asthma", gender="female").gender
    assert clause is not None
    assert clause.matches("Female")
    assert clause.matches("all")
    assert not clause.matches("male")
    assert not clause.matches(None)


# ---------- rendering ----------


def test_to_fts5_match_quotes_and_ors_tokens() -> None:
    clause = LexicalClause(text='Heart "failure" NOT', fields=("brief_title", "criteria"))
    assert to_fts5_match(clause) == '{brief_title criteria} : ("heart" OR "failure" OR "not")'


def test_to_dict_describes_all_parts() -> None:
    query = build_constrained_query("asthma", age=10, gender="male")
    described = query.to_dict()
    assert described["must"]["text"] == "asthma"
    assert len(described["filters"]) == 2
    assert described["gender"]["values"] == ["male", "all"]
    assert described["gender"]["occur"] == "filter"


def test_builder_is_pure() -> None:
    first = build_constrained_query("asthma", age=10, gender="male")
    second = build_constrained_query("asthma", age=10, gender="male")
    assert first == second
