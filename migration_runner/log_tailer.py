"""Incremental reads of growing task log files."""

import codecs
import logging
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)


@dataclass
class LogCursor:
    path: Path
    bytes_consumed: int = 0


class LogTailer:
    """Return the bytes appended to a log since the cursor's last poll.

    A log that does not exist yet, or that cannot be read right now, yields
    ``b""`` and the cursor stays put, so the bytes are picked up on a later
    poll instead of being lost.
    """

    def poll(self, cursor: LogCursor) -> bytes:
        try:
            size = cursor.path.stat().st_size
        except FileNotFoundError:
            return b""
        except OSError as exc:
            log.debug("stat failed for %s, retrying next poll: %s", cursor.path, exc)
            return b""

        if size < cursor.bytes_consumed:
            log.warning(
                "Log %s shrank from %d to %d bytes; waiting for it to grow",
                cursor.path,
                cursor.bytes_consumed,
                size,
            )
            return b""
        if size == cursor.bytes_consumed:
            return b""

        try:
            with open(cursor.path, "rb") as f:
                f.seek(cursor.bytes_consumed)
                data = f.read(size - cursor.bytes_consumed)
        except FileNotFoundError:
            return b""
        except OSError as exc:
            log.debug("read failed for %s, retrying next poll: %s", cursor.path, exc)
            return b""

        cursor.bytes_consumed += len(data)
        return data

    def drain(self, cursor: LogCursor) -> bytes:
        """Poll until nothing new is returned."""
        chunks = []
        while True:
            data = self.poll(cursor)
            if not data:
                return b"".join(chunks)
            chunks.append(data)


class LineBuffer:
    """Split a byte stream into complete text lines.

    Holds back an incomplete trailing line (and any partial UTF-8 sequence)
    until the rest of it arrives or :meth:`flush` is called.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        if not data:
            return []
        text = self._pending + self._decoder.decode(data)
        lines = text.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if not text:
            return []
        return [line.rstrip("\r") for line in text.split("\n")]


def read_log_text(path: Path | None) -> str:
    """Return the whole log as text, or "" when it is missing or unreadable."""
    if path is None:
        return ""
    try:
        return path.read_bytes().decode("utf-8", errors="replace")
    except OSError as exc:
        log.warning("Could not read log %s: %s", path, exc)
        return ""
