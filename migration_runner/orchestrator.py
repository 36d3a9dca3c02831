"""Orchestrator: run migration workers in parallel from a repository inventory."""

import argparse
import logging
import shlex
import sys
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from migration_runner.classifier import classify_completion
from migration_runner.config import ConfigError, RunConfig, load_config, validate_max_concurrent
from migration_runner.log_tailer import LineBuffer, LogCursor, LogTailer, read_log_text
from migration_runner.status_bar import StatusBar
from migration_runner.status_sink import StatusSink
from migration_runner.task_source import load_tasks
from migration_runner.worker import (
    LaunchError,
    MigrationTask,
    TaskStatus,
    Worker,
    allocate_log_path,
    append_log_note,
    build_command,
)

log = logging.getLogger("orchestrator")
console = Console()

# Type alias for the optional event callback
EventCallback = Callable[[str, dict], None] | None


def _fire_event(on_event: EventCallback, event_type: str, payload: dict) -> None:
    """Invoke the event callback if set, swallowing any exception it raises."""
    if on_event is None:
        return
    try:
        on_event(event_type, payload)
    except Exception as exc:  # pragma: no cover
        log.warning("on_event callback raised for %r: %s", event_type, exc)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunSummary:
    total: int
    succeeded: int
    failed: int


@dataclass
class ActiveSlot:
    task: MigrationTask
    worker: Worker
    cursor: LogCursor
    lines: LineBuffer
    deadline: float | None = None
    # Set once SIGTERM has been sent; the slot settles as Failure with this reason
    stop_reason: str | None = None
    kill_at: float | None = None
    killed: bool = False


class RunState:
    """Queue, active set and finished tasks of one run.

    Every task sits in exactly one of ``queue``, ``active``, ``succeeded`` or
    ``failed``. Only the Dispatcher loop mutates this object.
    """

    def __init__(self, tasks: Sequence[MigrationTask]):
        self.tasks = list(tasks)
        self.queue: deque[MigrationTask] = deque(self.tasks)
        self.active: list[ActiveSlot] = []
        self.succeeded: list[MigrationTask] = []
        self.failed: list[MigrationTask] = []

    @property
    def total(self) -> int:
        return len(self.tasks)

    @property
    def completed(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def done(self) -> bool:
        return not self.queue and not self.active

    def counts(self) -> tuple[int, int, int, int]:
        return len(self.queue), len(self.active), len(self.succeeded), len(self.failed)

    def snapshot(self) -> tuple[MigrationTask, ...]:
        return tuple(self.tasks)

    def summary(self) -> RunSummary:
        return RunSummary(
            total=self.total,
            succeeded=len(self.succeeded),
            failed=len(self.failed),
        )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher:
    """Runs tasks through at most ``max_concurrent`` child processes at a time.

    A single polling loop starts queued tasks in FIFO order, forwards new log
    output to the console, classifies finished tasks, and persists the
    snapshot and redraws the status bar after every transition. It sleeps
    ``poll_interval`` seconds only when an iteration made no progress.
    """

    def __init__(
        self,
        command: list[str],
        log_dir: str | Path,
        status_sink: StatusSink | None = None,
        status_bar: StatusBar | None = None,
        poll_interval: float = 5.0,
        task_timeout: float | None = None,
        run_timeout: float | None = None,
        terminate_grace: float = 10.0,
        output_console: Console | None = None,
        on_event: EventCallback = None,
        worker_factory: Callable[[MigrationTask, list[str]], Worker] = Worker,
        tailer: LogTailer | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.command = command
        self.log_dir = Path(log_dir)
        self.status_sink = status_sink
        self.console = output_console or console
        self.status_bar = status_bar or StatusBar(self.console)
        self.poll_interval = poll_interval
        self.task_timeout = task_timeout
        self.run_timeout = run_timeout
        self.terminate_grace = terminate_grace
        self.on_event = on_event
        self.worker_factory = worker_factory
        self.tailer = tailer or LogTailer()
        self.clock = clock
        self.sleep = sleep
        self.state: RunState | None = None
        self._sequence = 0

    def run(self, tasks: Sequence[MigrationTask], max_concurrent: int) -> RunSummary:
        validate_max_concurrent(max_concurrent)
        if not tasks:
            raise ConfigError("No tasks to run")

        state = self.state = RunState(tasks)
        self._sequence = 0
        run_deadline = (
            self.clock() + self.run_timeout if self.run_timeout is not None else None
        )
        log.info(
            "Starting %d migration(s), up to %d at a time", state.total, max_concurrent
        )
        _fire_event(self.on_event, "run_started", {
            "total": state.total,
            "max_concurrent": max_concurrent,
        })

        self.status_bar.start()
        aborted = False
        try:
            self._notify()
            while not state.done:
                progressed = self._start_ready(max_concurrent)
                self._forward_output()
                progressed = self._reap_finished() or progressed

                if (run_deadline is not None and not aborted and not state.done
                        and self.clock() >= run_deadline):
                    log.error("Run timed out after %ss", self.run_timeout)
                    self._abort(f"Run timed out after {self.run_timeout}s")
                    aborted = progressed = True

                if not progressed and not state.done:
                    self.status_bar.render(*state.counts())
                    self.sleep(self.poll_interval)
        except KeyboardInterrupt:
            log.warning("Interrupted: terminating %d active migration(s)", len(state.active))
            self._abort("Run interrupted")
            self._wait_for_stopped()
            raise
        finally:
            self.status_bar.stop()

        summary = state.summary()
        log.info(
            "All migrations settled: %d succeeded, %d failed",
            summary.succeeded,
            summary.failed,
        )
        _fire_event(self.on_event, "run_completed", {
            "total": summary.total,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
        })
        return summary

    # -- loop steps ---------------------------------------------------------

    def _start_ready(self, max_concurrent: int) -> bool:
        state = self.state
        started = False
        while state.queue and len(state.active) < max_concurrent:
            task = state.queue.popleft()
            self._sequence += 1
            task.log_path = allocate_log_path(self.log_dir, task, self._sequence)
            task.started_at = datetime.now(timezone.utc)
            started = True

            try:
                worker = self.worker_factory(task, self.command)
                worker.start()
            except LaunchError as exc:
                log.error("Could not launch migration for %s: %s", task.id, exc)
                append_log_note(task.log_path, f"Launch failed: {exc}")
                self._settle(task, TaskStatus.FAILURE, f"launch failed: {exc}")
                continue
            except BaseException:
                # Already off the queue; settle it before the interrupt unwinds
                append_log_note(task.log_path, "Launch interrupted; migration was never started")
                self._settle(task, TaskStatus.FAILURE, "launch interrupted")
                raise

            task.status = TaskStatus.RUNNING
            deadline = (
                self.clock() + self.task_timeout if self.task_timeout is not None else None
            )
            state.active.append(ActiveSlot(
                task=task,
                worker=worker,
                cursor=LogCursor(task.log_path),
                lines=LineBuffer(),
                deadline=deadline,
            ))
            log.info(
                "Started migration %s -> %s (log: %s)", task.source, task.id, task.log_path
            )
            _fire_event(self.on_event, "task_started", {
                "task_id": task.id,
                "log_path": str(task.log_path),
            })
            self._notify()
        return started

    def _forward_output(self) -> None:
        for slot in self.state.active:
            self._emit(slot, slot.lines.feed(self.tailer.poll(slot.cursor)))

    def _reap_finished(self) -> bool:
        finished = False
        now = self.clock()
        for slot in list(self.state.active):
            exit_code = slot.worker.poll()
            if exit_code is not None:
                self._finish(slot, exit_code)
                finished = True
            elif slot.stop_reason is None:
                if slot.deadline is not None and now >= slot.deadline:
                    log.error("Migration %s timed out after %ss", slot.task.id, self.task_timeout)
                    self._stop(slot, f"Migration timed out after {self.task_timeout}s")
                    finished = True
            elif not slot.killed and now >= slot.kill_at:
                slot.worker.kill()
                slot.killed = True
                finished = True
        return finished

    def _wait_for_stopped(self) -> None:
        """Reap stopped migrations, escalating to SIGKILL after the grace period."""
        while self.state.active:
            self._forward_output()
            if not self._reap_finished():
                self.sleep(min(self.poll_interval, 0.5))

    def _abort(self, reason: str) -> None:
        """Send SIGTERM to active migrations and fail everything still queued.

        Stopped migrations stay active until a later pass reaps them.
        """
        state = self.state
        for slot in list(state.active):
            if slot.stop_reason is not None:
                continue
            exit_code = slot.worker.poll()
            if exit_code is not None:
                self._finish(slot, exit_code)
            else:
                self._stop(slot, reason)
        while state.queue:
            task = state.queue.popleft()
            self._sequence += 1
            task.log_path = allocate_log_path(self.log_dir, task, self._sequence)
            append_log_note(task.log_path, f"{reason}; migration was never started")
            self._settle(task, TaskStatus.FAILURE, reason)

    # -- transitions --------------------------------------------------------

    def _stop(self, slot: ActiveSlot, reason: str) -> None:
        slot.stop_reason = reason
        slot.kill_at = self.clock() + self.terminate_grace
        slot.worker.terminate()

    def _finish(self, slot: ActiveSlot, exit_code: int) -> None:
        task = slot.task
        self._emit(slot, slot.lines.feed(self.tailer.drain(slot.cursor)))
        self._emit(slot, slot.lines.flush())
        task.exit_code = exit_code
        self.state.active.remove(slot)

        if slot.stop_reason is not None:
            append_log_note(task.log_path, f"{slot.stop_reason}; process terminated")
            self._settle(task, TaskStatus.FAILURE, slot.stop_reason)
            return
        result = classify_completion(exit_code, read_log_text(task.log_path))
        self._settle(task, result.status, result.reason)

    def _settle(self, task: MigrationTask, status: TaskStatus, reason: str) -> None:
        task.status = status
        task.finished_at = datetime.now(timezone.utc)
        if status is TaskStatus.SUCCESS:
            self.state.succeeded.append(task)
            log.info("Migration %s succeeded", task.id)
            event = "task_completed"
        else:
            self.state.failed.append(task)
            log.error("Migration %s failed: %s (log: %s)", task.id, reason, task.log_path)
            event = "task_failed"
        _fire_event(self.on_event, event, {
            "task_id": task.id,
            "status": status.value,
            "reason": reason,
            "exit_code": task.exit_code,
            "log_path": str(task.log_path),
        })
        self._notify()

    def _notify(self) -> None:
        if self.status_sink is not None:
            self.status_sink.persist(self.state.snapshot())
        self.status_bar.render(*self.state.counts())

    def _emit(self, slot: ActiveSlot, lines: list[str]) -> None:
        prefix = f"[{slot.task.github_repo}] "
        for line in lines:
            self.console.print(prefix + line, markup=False, highlight=False, soft_wrap=True)


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------


def _format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


_STATUS_STYLE = {
    TaskStatus.PENDING: "[dim]Pending[/dim]",
    TaskStatus.RUNNING: "[yellow]Running[/yellow]",
    TaskStatus.SUCCESS: "[green]Success[/green]",
    TaskStatus.FAILURE: "[red]Failure[/red]",
}


def build_table(tasks: Sequence[MigrationTask]) -> Table:
    table = Table(title="Migration Results", expand=True)
    table.add_column("Source", style="cyan")
    table.add_column("Target", style="white")
    table.add_column("Visibility", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Duration", justify="right")
    table.add_column("Log", style="dim")

    for task in tasks:
        elapsed = task.elapsed_seconds
        table.add_row(
            escape(task.source),
            escape(task.id),
            task.gh_repo_visibility,
            _STATUS_STYLE[task.status],
            _format_duration(elapsed) if elapsed is not None else "",
            str(task.log_path) if task.log_path else "",
        )
    return table


def print_summary(tasks: Sequence[MigrationTask], summary: RunSummary, status_path: Path | None = None) -> None:
    console.print()
    console.print(build_table(tasks))
    console.rule("[bold green]Migration Run Complete")
    console.print(f"  Total:     {summary.total}")
    console.print(f"  Succeeded: {summary.succeeded}")
    console.print(f"  Failed:    {summary.failed}")
    if status_path is not None:
        console.print(f"  Status:    {status_path}")


def dry_run_plan(tasks: Sequence[MigrationTask], config: RunConfig) -> None:
    """Print the execution plan without launching any migration."""
    console.rule("[bold cyan]Dry Run: Migration Plan")
    console.print(f"\n[bold]Tasks loaded:[/bold] {len(tasks)}")
    console.print(f"[bold]Max concurrent:[/bold] {config.max_concurrent}")
    console.print(f"[bold]Status snapshot:[/bold] {config.status_path}")
    console.print(f"[bold]Log directory:[/bold] {config.log_dir}\n")

    for n, task in enumerate(tasks, 1):
        when = "starts immediately" if n <= config.max_concurrent else "queued"
        console.print(f"  {n}. [cyan]{escape(task.source)}[/cyan] -> {escape(task.id)} "
                      f"({task.gh_repo_visibility}) [dim]{when}[/dim]")
        try:
            cmd = shlex.join(build_command(config.command, task))
        except LaunchError as exc:
            console.print(f"     [bold red]{escape(str(exc))}[/bold red]")
        else:
            console.print(f"     [dim]$ {escape(cmd)}[/dim]", highlight=False)
    console.rule("[bold cyan]End of Dry Run")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run repository migrations in parallel")
    parser.add_argument(
        "--config",
        default=None,
        help="YAML file with default settings; flags below override it",
    )
    parser.add_argument(
        "--tasks",
        default=None,
        help="CSV inventory or YAML plan of repositories to migrate (default: repos.csv)",
    )
    parser.add_argument(
        "--status-file",
        default=None,
        help="CSV snapshot rewritten after every status change (default: repos_with_status.csv)",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for per-migration log files (default: ./logs)",
    )
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Max migrations running at once, 1-5 (default: 3)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to wait between polls when nothing changed (default: 5)",
    )
    parser.add_argument(
        "--task-timeout",
        type=float,
        default=None,
        help="Kill a migration and mark it failed after this many seconds (default: none)",
    )
    parser.add_argument(
        "--run-timeout",
        type=float,
        default=None,
        help="Stop the whole run after this many seconds (default: none)",
    )
    parser.add_argument(
        "--command",
        default=None,
        help=(
            "Migration command template, e.g. "
            "'gh gei migrate-repo --github-source-org {org} ...'. "
            "Placeholders are the task source column names."
        ),
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Print the plan without launching migrations (default: False)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> RunConfig:
    config = load_config(args.config) if args.config else RunConfig()
    overrides = {
        "tasks_path": args.tasks,
        "status_path": args.status_file,
        "log_dir": args.log_dir,
        "max_concurrent": args.max_concurrent,
        "poll_interval": args.poll_interval,
        "task_timeout": args.task_timeout,
        "run_timeout": args.run_timeout,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if args.command is not None:
        try:
            config.command = shlex.split(args.command)
        except ValueError as exc:
            raise ConfigError(f"Could not parse --command: {exc}") from exc
    config.validate()
    return config


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = resolve_config(args)
        log.info("Loading tasks from %s", config.tasks_path)
        tasks = load_tasks(config.tasks_path)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return 2
    log.info("Loaded %d tasks", len(tasks))

    if args.dry_run:
        dry_run_plan(tasks, config)
        return 0

    status_path = Path(config.status_path)
    dispatcher = Dispatcher(
        command=config.command,
        log_dir=config.log_dir,
        status_sink=StatusSink(status_path),
        poll_interval=config.poll_interval,
        task_timeout=config.task_timeout,
        run_timeout=config.run_timeout,
    )
    try:
        summary = dispatcher.run(tasks, config.max_concurrent)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return 2
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Active migrations were terminated.")
        return 130

    print_summary(dispatcher.state.tasks, summary, status_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
