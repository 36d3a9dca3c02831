"""Persist the status of every task to a CSV snapshot."""

import csv
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path

from migration_runner.worker import REQUIRED_COLUMNS, MigrationTask

log = logging.getLogger(__name__)

STATUS_COLUMN = "migration_status"
LOG_COLUMN = "log_file"


def snapshot_columns(tasks: Sequence[MigrationTask]) -> list[str]:
    """Input columns in first-seen order, then the status and log columns."""
    columns: list[str] = []
    seen: set[str] = {STATUS_COLUMN, LOG_COLUMN}
    for name in REQUIRED_COLUMNS:
        if name not in seen:
            columns.append(name)
            seen.add(name)
    for task in tasks:
        for name in task.row:
            if name not in seen:
                columns.append(name)
                seen.add(name)
    return columns + [STATUS_COLUMN, LOG_COLUMN]


def snapshot_row(task: MigrationTask) -> dict[str, str]:
    row = dict(task.row)
    row.update(task.identity())
    row[STATUS_COLUMN] = task.status.value
    row[LOG_COLUMN] = str(task.log_path) if task.log_path else ""
    return row


class StatusSink:
    """Writes the full snapshot on every call and atomically replaces the old one.

    Readers see either the previous snapshot or the new one, never a mix.
    Write failures are logged and reported through the return value only.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def persist(self, tasks: Sequence[MigrationTask]) -> bool:
        try:
            self._write(tasks)
        except (OSError, csv.Error) as exc:
            log.warning("Could not write status snapshot %s: %s", self.path, exc)
            return False
        return True

    def _write(self, tasks: Sequence[MigrationTask]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=snapshot_columns(tasks))
                writer.writeheader()
                for task in tasks:
                    writer.writerow(snapshot_row(task))
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
