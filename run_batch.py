"""Template script for unattended retrieval + evaluation runs.

Edit the config section below, then run:

    uv run python run_batch.py

For background execution (fire and forget):

    nohup uv run python run_batch.py > /dev/null 2>&1 &

To check progress on a running experiment:

    tail -f data/runs/run_<timestamp>/run.log

Each configuration in CONFIGS becomes its own run directory under data/runs/,
so gender-filter vs gender-boost or different pool sizes can be compared
side by side from their evaluation.json files.
"""

from trial_retrieval.evaluation.metrics import CutoffPolicy
from trial_retrieval.experiments.runner import ExperimentConfig, run_experiment
from trial_retrieval.search.query_builder import GenderMode
from trial_retrieval.search.retriever import RetrievalConfig

DB_PATH = "data/index/trials.db"
TOPICS_PATH = "data/topics.json"
QUERY_EMBEDDINGS_PATH = "data/query_embeddings.json"
QRELS_PATH = "data/qrels.txt"

CONFIGS = [
    ExperimentConfig(
        db_path=DB_PATH,
        topics_path=TOPICS_PATH,
        query_embeddings_path=QUERY_EMBEDDINGS_PATH,
        qrels_path=QRELS_PATH,
        retrieval=RetrievalConfig(gender_mode=GenderMode.FILTER),
        description="strict gender filter",
    ),
    ExperimentConfig(
        db_path=DB_PATH,
        topics_path=TOPICS_PATH,
        query_embeddings_path=QUERY_EMBEDDINGS_PATH,
        qrels_path=QRELS_PATH,
        retrieval=RetrievalConfig(gender_mode=GenderMode.BOOST),
        description="gender as a soft boost",
    ),
    ExperimentConfig(
        db_path=DB_PATH,
        topics_path=TOPICS_PATH,
        query_embeddings_path=QUERY_EMBEDDINGS_PATH,
        qrels_path=QRELS_PATH,
        cutoff_policy=CutoffPolicy.FIXED,
        save_figures=True,
        description="strict gender filter, fixed cutoff",
    ),
]


if __name__ == "__main__":
    for config in CONFIGS:
        outcome = run_experiment(config)
        print(f"\n{outcome.run_id}: {config.description}")
        if outcome.evaluation is not None:
            print(outcome.evaluation.report)
