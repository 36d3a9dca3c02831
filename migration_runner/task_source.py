"""Load migration tasks from a CSV inventory or a YAML plan."""

import csv
from pathlib import Path

import yaml

from migration_runner.config import ConfigError
from migration_runner.worker import REQUIRED_COLUMNS, MigrationTask

VALID_VISIBILITIES = ("private", "public", "internal")


def load_tasks(tasks_path: str | Path) -> list[MigrationTask]:
    """Read the task source and return one MigrationTask per row, in file order.

    ``.yaml``/``.yml`` files must have a top-level 'tasks' key holding a list
    of mappings; anything else is read as CSV with a header row. Every row
    must carry the columns in REQUIRED_COLUMNS with non-blank values, and
    gh_repo_visibility must be one of private, public or internal. Extra
    columns are kept and written back to the status snapshot.

    Raises ConfigError if the file is missing, a column is missing, a row is
    invalid, or there are no tasks at all.
    """
    tasks_path = Path(tasks_path)
    if not tasks_path.is_file():
        raise ConfigError(f"Task source not found: {tasks_path}")

    if tasks_path.suffix.lower() in (".yaml", ".yml"):
        columns, rows = _read_yaml(tasks_path)
    else:
        columns, rows = _read_csv(tasks_path)

    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise ConfigError(
            f"{tasks_path} is missing required column(s): {', '.join(missing)}"
        )
    if not rows:
        raise ConfigError(f"No tasks found in {tasks_path}")

    return [_task_from_row(row, f"{tasks_path} row {n}") for n, row in enumerate(rows, 1)]


def _read_csv(path: Path) -> tuple[list[str], list[dict[str, str]]]:
    try:
        # utf-8-sig drops the BOM spreadsheet exports put in front of the header
        with open(path, newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            columns = [c.strip() for c in reader.fieldnames or []]
            rows = []
            for raw in reader:
                row = {
                    (k or "").strip(): (v or "").strip()
                    for k, v in raw.items()
                    if k is not None
                }
                if any(row.values()):
                    rows.append(row)
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ConfigError(f"Could not read {path}: {exc}") from exc
    return columns, rows


def _read_yaml(path: Path) -> tuple[list[str], list[dict[str, str]]]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read {path}: {exc}") from exc

    raw_tasks = data.get("tasks") if isinstance(data, dict) else None
    if not isinstance(raw_tasks, list):
        raise ConfigError(f"No 'tasks' list found in {path}")

    columns: list[str] = []
    rows = []
    for entry in raw_tasks:
        if not isinstance(entry, dict):
            raise ConfigError(f"Every entry under 'tasks' in {path} must be a mapping")
        row = {str(k): "" if v is None else str(v).strip() for k, v in entry.items()}
        for name in row:
            if name not in columns:
                columns.append(name)
        rows.append(row)
    if not raw_tasks:
        # An empty list still names no columns; report it as "no tasks"
        columns = list(REQUIRED_COLUMNS)
    return columns, rows


def _task_from_row(row: dict[str, str], where: str) -> MigrationTask:
    blank = [c for c in REQUIRED_COLUMNS if not row.get(c)]
    if blank:
        raise ConfigError(f"{where}: blank value for {', '.join(blank)}")

    visibility = row["gh_repo_visibility"].lower()
    if visibility not in VALID_VISIBILITIES:
        raise ConfigError(
            f"{where}: gh_repo_visibility must be one of "
            f"{', '.join(VALID_VISIBILITIES)}, got {row['gh_repo_visibility']!r}"
        )

    return MigrationTask(
        org=row["org"],
        teamproject=row["teamproject"],
        repo=row["repo"],
        github_org=row["github_org"],
        github_repo=row["github_repo"],
        gh_repo_visibility=visibility,
        row=dict(row),
    )
