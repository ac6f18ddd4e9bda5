import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from trial_retrieval.search.fts5 import FTS5TrialBackend


def sample_trial(
    nct_id: str = "NCT00000001",
    brief_title: str = "Chemotherapy for breast cancer",
    detailed_description: str = "A randomized study.",
    criteria: str = "Adults with confirmed diagnosis.",
    gender: str | None = "All",
    minimum_age: int | None = 18,
    maximum_age: int | None = 65,
    embedding: list[float] | None = None,
) -> dict[str, Any]:
    """Return a canonical parsed trial dict for use in tests."""
    trial: dict[str, Any] = {
        "nct_id": nct_id,
        "brief_title": brief_title,
        "detailed_description": detailed_description,
        "criteria": criteria,
        "gender": gender,
        "minimum_age": minimum_age,
        "maximum_age": maximum_age,
    }
    if embedding is not None:
        trial["embedding"] = embedding
    return trial


SAMPLE_TRIALS: list[dict[str, Any]] = [
    sample_trial(
        "NCT001",
        "Chemotherapy for breast cancer",
        gender="Female",
        minimum_age=18,
        maximum_age=65,
        embedding=[1.0, 0.0, 0.0],
    ),
    sample_trial(
        "NCT002",
        "Immunotherapy for lung cancer",
        gender="All",
        minimum_age=40,
        maximum_age=80,
        embedding=[0.0, 1.0, 0.0],
    ),
    sample_trial(
        "NCT003",
        "Inhaled steroids for pediatric asthma",
        gender="All",
        minimum_age=2,
        maximum_age=17,
        embedding=[0.0, 0.0, 1.0],
    ),
    sample_trial(
        "NCT004",
        "Radiation for prostate cancer",
        gender="Male",
        minimum_age=50,
        maximum_age=90,
        embedding=None,
    ),
    sample_trial(
        "NCT005",
        "Exercise after cancer survivorship",
        gender="All",
        minimum_age=18,
        maximum_age=None,
        embedding=[0.5, 0.5, 0.0],
    ),
]


@pytest.fixture
def tmp_trials_db(tmp_path: Path) -> str:
    """Create a temporary FTS5 trial index with the sample trials inserted."""
    db_path = str(tmp_path / "trials.db")
    backend = FTS5TrialBackend()
    backend.create_database(db_path)
    backend.insert_trials(db_path, [dict(trial) for trial in SAMPLE_TRIALS])
    return db_path


@pytest.fixture(autouse=True)
def reset_package_logging() -> Iterator[None]:
    """Drop handlers installed by run logging so they never outlive a test."""
    yield
    package_logger = logging.getLogger("trial_retrieval")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
