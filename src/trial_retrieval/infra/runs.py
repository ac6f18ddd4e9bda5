import json
from datetime import datetime
from pathlib import Path
from typing import Any


class NoRunsFoundError(Exception):
    def __init__(self, runs_dir: Path):
        self.runs_dir = runs_dir
        super().__init__(
            f"No runs found. Expected runs in: {runs_dir}\n"
            f"Create a new run with: trial-retrieval retrieve"
        )


DATA_DIR = Path("data")
RUNS_SUBDIR = "runs"
RUN_PREFIX = "run_"
RUN_METADATA_FILE = "run.json"
RUN_FILE_NAME = "run.txt"
RUN_LOG_FILE = "run.log"
EVALUATION_FILE = "evaluation.json"
LATEST_RUN = "latest"


def _get_runs_dir() -> Path:
    return DATA_DIR / RUNS_SUBDIR


def _generate_run_id() -> str:
    """Timestamp-based run ID; microseconds keep back-to-back runs distinct."""
    return f"{RUN_PREFIX}{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"


def _load_run_metadata(run_dir: Path) -> dict[str, Any]:
    metadata_path = run_dir / RUN_METADATA_FILE
    if not metadata_path.exists():
        return {}
    with open(metadata_path, encoding="utf-8") as f:
        return json.load(f)


def _save_run_metadata(run_dir: Path, metadata: dict[str, Any]) -> None:
    metadata_path = run_dir / RUN_METADATA_FILE
    with open(metadata_path, "w", encoding="utf-8") as f:
        json.dump(metadata, f, indent=2, ensure_ascii=False)


def create_run(
    description: str | None = None,
    config: dict[str, Any] | None = None,
) -> tuple[str, Path]:
    run_id = _generate_run_id()
    run_dir = _get_runs_dir() / run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    metadata = {
        "run_id": run_id,
        "created_at": datetime.now().isoformat(),
        "description": description,
        "config": config or {},
        "pipeline_status": {},
    }
    _save_run_metadata(run_dir, metadata)

    return run_id, run_dir


def _sorted_run_dirs(runs_dir: Path) -> list[Path]:
    return sorted(
        [d for d in runs_dir.iterdir() if d.is_dir() and d.name.startswith(RUN_PREFIX)],
        key=lambda x: x.name,
        reverse=True,
    )


def get_latest_run() -> Path:
    runs_dir = _get_runs_dir()

    if not runs_dir.exists():
        raise NoRunsFoundError(runs_dir)

    run_dirs = _sorted_run_dirs(runs_dir)
    if not run_dirs:
        raise NoRunsFoundError(runs_dir)

    return run_dirs[0]


def get_run(run_id: str) -> Path:
    run_dir = _get_runs_dir() / run_id

    if not run_dir.exists():
        raise FileNotFoundError(f"Run '{run_id}' not found. Expected directory: {run_dir}")

    return run_dir


def list_runs() -> list[dict[str, Any]]:
    runs_dir = _get_runs_dir()

    if not runs_dir.exists():
        return []

    runs: list[dict[str, Any]] = []
    for run_dir in _sorted_run_dirs(runs_dir):
        metadata = _load_run_metadata(run_dir)
        metadata["run_dir"] = run_dir
        if "run_id" not in metadata:
            metadata["run_id"] = run_dir.name
        runs.append(metadata)

    return runs


def update_run_status(
    run_dir: Path,
    stage: str,
    info: dict[str, Any] | None = None,
) -> None:
    metadata = _load_run_metadata(run_dir)

    if "pipeline_status" not in metadata:
        metadata["pipeline_status"] = {}

    stage_info: dict[str, Any] = dict(info) if info else {}
    stage_info["completed_at"] = datetime.now().isoformat()

    metadata["pipeline_status"][stage] = stage_info

    _save_run_metadata(run_dir, metadata)


def resolve_run_file(run: str | Path) -> Path:
    """Map "latest", a run id or a plain path to a run file.

    "latest" and run ids resolve to the run file inside the matching run
    directory; anything else is taken as a path as-is.

    Raises:
        NoRunsFoundError: If "latest" is requested and no runs exist.
        FileNotFoundError: If a run id names a missing run directory.
    """
    name = str(run)
    if name == LATEST_RUN:
        return get_latest_run() / RUN_FILE_NAME
    if name.startswith(RUN_PREFIX) and Path(name).name == name and not Path(name).exists():
        return get_run(name) / RUN_FILE_NAME
    return Path(run)
