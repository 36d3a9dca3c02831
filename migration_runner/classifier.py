"""Decide whether a finished migration succeeded from its exit code and log text."""

from dataclasses import dataclass

from migration_runner.worker import TaskStatus

SUCCESS_MARKER = "State: SUCCEEDED"
NO_OPERATION_MARKER = "No operation will be performed"


@dataclass(frozen=True)
class Classification:
    status: TaskStatus
    reason: str


def classify_completion(
    exit_code: int,
    log_text: str,
    *,
    success_marker: str = SUCCESS_MARKER,
    no_op_marker: str = NO_OPERATION_MARKER,
) -> Classification:
    """Classify a finished migration. The first matching rule wins.

    1. The tool decided there was nothing to do -> failure.
    2. The remote operation never reported the success state -> failure,
       whatever the exit code. The CLI can exit 0 while the migration it
       queued is still reported as in progress.
    3. Exit code 0 -> success.
    4. Anything else -> failure.
    """
    if no_op_marker in log_text:
        return Classification(TaskStatus.FAILURE, "no operation performed")
    if success_marker not in log_text:
        return Classification(TaskStatus.FAILURE, f"log lacks {success_marker!r}")
    if exit_code == 0:
        return Classification(TaskStatus.SUCCESS, "succeeded")
    return Classification(TaskStatus.FAILURE, f"exit code {exit_code}")
