"""Worker module that runs one migration command as a child process writing to a log file."""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "org",
    "teamproject",
    "repo",
    "github_org",
    "github_repo",
    "gh_repo_visibility",
)


class LaunchError(Exception):
    """Raised when the migration command cannot be started at all."""


class TaskStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILURE = "Failure"


@dataclass
class MigrationTask:
    org: str
    teamproject: str
    repo: str
    github_org: str
    github_repo: str
    gh_repo_visibility: str
    # Full input row, extra inventory columns included
    row: dict[str, str] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    log_path: Path | None = None
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def id(self) -> str:
        return f"{self.github_org}/{self.github_repo}"

    @property
    def source(self) -> str:
        return f"{self.org}/{self.teamproject}/{self.repo}"

    @property
    def elapsed_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def identity(self) -> dict[str, str]:
        return {column: getattr(self, column) for column in REQUIRED_COLUMNS}


def build_command(template: list[str], task: MigrationTask) -> list[str]:
    """Fill ``{column}`` placeholders in *template* from the task's identity."""
    try:
        return [part.format(**task.identity()) for part in template]
    except (KeyError, IndexError, ValueError) as e:
        raise LaunchError(f"Bad command template {template!r}: {e}") from e


def _slugify(text: str) -> str:
    slug = text.lower().strip()
    slug = re.sub(r"[^a-z0-9._]+", "-", slug)
    slug = slug.strip("-")
    return slug[:50] or "task"


def allocate_log_path(
    log_dir: str | Path,
    task: MigrationTask,
    sequence: int,
    now: datetime | None = None,
) -> Path:
    """Return a log path for *task* that no earlier task or run has used."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y%m%d-%H%M%S")
    base = f"migration-{_slugify(task.github_repo)}-{stamp}-{sequence:03d}"
    log_dir = Path(log_dir)
    candidate = log_dir / f"{base}.log"
    n = 1
    while candidate.exists():
        candidate = log_dir / f"{base}-{n}.log"
        n += 1
    return candidate


def append_log_note(log_path: Path, message: str) -> None:
    """Append an orchestrator note to a task log, creating it if needed."""
    stamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(f"\n[{stamp}] [migration-runner] {message}\n")
    except OSError as exc:
        logger.warning("Could not write note to %s: %s", log_path, exc)


class Worker:
    """Owns the child process for one task.

    The child's stdout and stderr both go to ``task.log_path``; the caller
    polls :meth:`poll` and never waits on the process directly.
    """

    def __init__(self, task: MigrationTask, command: list[str]):
        if task.log_path is None:
            raise ValueError(f"Task {task.id} has no log path")
        self.task = task
        self.command = build_command(command, task)
        self.process: subprocess.Popen | None = None

    def start(self) -> None:
        log_path = self.task.log_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(log_path, "ab")
        except OSError as e:
            raise LaunchError(f"Cannot open log file {log_path}: {e}") from e

        logger.debug("Launching %s: %s", self.task.id, self.command)
        try:
            self.process = subprocess.Popen(
                self.command,
                stdout=handle,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            raise LaunchError(f"Failed to launch {self.command[0]!r}: {e}") from e
        finally:
            # The child holds its own descriptor
            handle.close()

    def poll(self) -> int | None:
        if self.process is None:
            raise RuntimeError("Worker has not been started")
        return self.process.poll()

    def terminate(self) -> None:
        """Send SIGTERM. The caller keeps polling and escalates with :meth:`kill`."""
        if self.poll() is None:
            self.process.terminate()

    def kill(self) -> None:
        if self.poll() is None:
            logger.warning("Migration %s ignored SIGTERM; killing", self.task.id)
            self.process.kill()
