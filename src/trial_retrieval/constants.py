# ---------------------------------------------------------------------------
# Retrieval defaults
# ---------------------------------------------------------------------------

# Stage one pulls a broad candidate pool; only membership and stored vectors matter
DEFAULT_POOL_SIZE: int = 10000
DEFAULT_OUTPUT_SIZE: int = 10
DEFAULT_MAX_WORKERS: int = 4

# Fields matched by the free-text clause (lower-cased at index time)
DEFAULT_TEXT_FIELDS: tuple[str, ...] = ("brief_title", "detailed_description", "criteria")

# Score added to candidates whose gender matches when the gender clause is a soft boost
DEFAULT_GENDER_BOOST: float = 1.0

# Single-signal baselines
DEFAULT_LEXICAL_LIMIT: int = 100
DEFAULT_VECTOR_LIMIT: int = 100

# ---------------------------------------------------------------------------
# Run file and evaluation defaults
# ---------------------------------------------------------------------------

DEFAULT_RUN_TAG: str = "hybrid_rescore"
LEXICAL_RUN_TAG: str = "lexical"
VECTOR_RUN_TAG: str = "vector"

DEFAULT_EVAL_CUTOFF: int = 10
SCORE_DECIMALS: int = 4

# ---------------------------------------------------------------------------
# Demographic vocabulary
# ---------------------------------------------------------------------------

GENDER_ALL = "all"
VALID_GENDERS: frozenset[str] = frozenset({"male", "female", GENDER_ALL})

# Age units understood by the normaliser, expressed as "units per year"
AGE_UNITS_PER_YEAR: dict[str, int] = {
    "year": 1,
    "years": 1,
    "month": 12,
    "months": 12,
    "week": 52,
    "weeks": 52,
    "day": 365,
    "days": 365,
}
MISSING_AGE_TOKENS: frozenset[str] = frozenset({"n/a", "none", ""})
