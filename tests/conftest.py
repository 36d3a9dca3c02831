"""Shared fixtures: a fake migration command and task builders."""

import io
import json
import sys
import textwrap
from pathlib import Path

import pytest
from rich.console import Console

from migration_runner.worker import MigrationTask

FAKE_MIGRATOR = textwrap.dedent(
    """
    import json
    import signal
    import sys
    import time

    behaviours = json.load(open(sys.argv[1]))
    spec = behaviours.get(sys.argv[2], behaviours.get("*", {}))
    if spec.get("ignore_sigterm"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    for line in spec.get("lines", []):
        print(line, flush=True)
        time.sleep(spec.get("line_delay", 0))
    time.sleep(spec.get("sleep", 0))
    sys.exit(spec.get("exit", 0))
    """
)

SUCCESS_LINES = [
    "[INFO] Migrating Repo...",
    "[INFO] Migration log available at https://example.invalid/log",
    "[INFO] State: SUCCEEDED",
]


def make_task(
    github_repo: str = "repo-1",
    visibility: str = "private",
    **extra: str,
) -> MigrationTask:
    row = {
        "org": "contoso",
        "teamproject": "platform",
        "repo": github_repo,
        "github_org": "contoso-gh",
        "github_repo": github_repo,
        "gh_repo_visibility": visibility,
        **extra,
    }
    return MigrationTask(
        org=row["org"],
        teamproject=row["teamproject"],
        repo=row["repo"],
        github_org=row["github_org"],
        github_repo=row["github_repo"],
        gh_repo_visibility=visibility,
        row=row,
    )


@pytest.fixture
def fake_migrator(tmp_path: Path):
    """Return a function that writes per-repo behaviours and returns a command template.

    Behaviours map a github_repo name (or "*") to a dict with optional keys
    ``lines``, ``line_delay``, ``sleep`` and ``exit``.
    """
    script = tmp_path / "fake_migrator.py"
    script.write_text(FAKE_MIGRATOR)

    def _make(behaviours: dict) -> list[str]:
        behaviours_path = tmp_path / "behaviours.json"
        behaviours_path.write_text(json.dumps(behaviours))
        return [sys.executable, str(script), str(behaviours_path), "{github_repo}"]

    return _make


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=200)
