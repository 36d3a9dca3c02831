"""Single-line live summary of the run."""

import logging
import time
from collections.abc import Callable

from rich.console import Console
from rich.live import Live
from rich.text import Text

log = logging.getLogger(__name__)


def format_status_line(queued: int, active: int, succeeded: int, failed: int) -> str:
    total = queued + active + succeeded + failed
    return (
        f"Queued: {queued}  Running: {active}  "
        f"Succeeded: {succeeded}  Failed: {failed}  "
        f"| Total: {total}"
    )


class StatusBar:
    """Shows the current counts without ever failing the run.

    On a terminal the line is redrawn in place with rich ``Live``. Elsewhere
    (CI logs, pipes) a full line is printed whenever the counts change, and
    repeated every *print_interval* seconds while they do not.
    """

    def __init__(
        self,
        console: Console | None = None,
        print_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.console = console or Console()
        self.print_interval = print_interval
        self._clock = clock
        self._live: Live | None = None
        self._disabled = False
        self._last_counts: tuple[int, int, int, int] | None = None
        self._last_print: float | None = None

    def start(self) -> None:
        if self._disabled or self._live is not None or not self.console.is_terminal:
            return
        try:
            self._live = Live(
                Text(""),
                console=self.console,
                refresh_per_second=2,
                transient=True,
            )
            self._live.start()
        except Exception as exc:
            log.debug("Live status line unavailable, falling back to prints: %s", exc)
            self._live = None

    def render(self, queued: int, active: int, succeeded: int, failed: int) -> None:
        if self._disabled:
            return
        counts = (queued, active, succeeded, failed)
        line = format_status_line(*counts)
        try:
            if self._live is not None:
                self._live.update(Text(line, style="bold"))
                return
            now = self._clock()
            unchanged = counts == self._last_counts
            if unchanged and self._last_print is not None and now - self._last_print < self.print_interval:
                return
            self.console.print(line, markup=False, highlight=False)
            self._last_counts = counts
            self._last_print = now
        except Exception as exc:
            log.debug("Status bar disabled: %s", exc)
            self._disabled = True

    def stop(self) -> None:
        if self._live is None:
            return
        try:
            self._live.stop()
        except Exception as exc:
            log.debug("Could not stop live status line: %s", exc)
        finally:
            self._live = None
