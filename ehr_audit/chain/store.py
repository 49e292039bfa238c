"""Append-only Log Store.

One physical file per (channel, UTC date) in JSON Lines format, named
``{channel}_{YYYY-MM-DD}.log``. Every entry is appended, flushed and fsynced
before the append is acknowledged: these are compliance records, so
durability is prioritized over batching. Rotation happens only at the UTC
date boundary; compression and archival are out of scope.

The log file is the sole source of truth for a chain's running hash. After a
crash, recover_tail() re-derives the running hash from the file's last
complete line.

Security:
- Files are only ever opened in append mode by the writer
- Directory permissions restrict access to the service account (0o750)
"""

import logging
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import TextIO

from ..errors import ChainWriteError, SerializationError
from ..models import GENESIS_HASH
from .canonical import decode_line, entry_hash

logger = logging.getLogger(__name__)

LOG_FILE_PATTERN = re.compile(r"^(?P<channel>[a-z][a-z0-9_]*)_(?P<date>\d{4}-\d{2}-\d{2})\.log$")


@dataclass(frozen=True)
class TailState:
    """Chain position derived from a log file.

    Attributes:
        running_hash: Hash of the last complete entry (GENESIS_HASH for an empty file)
        entry_count: Number of complete entries
        repair: None, "adopted" (a complete entry missing its newline was kept)
            or "discarded" (an incomplete trailing fragment was removed)
    """

    running_hash: str = GENESIS_HASH
    entry_count: int = 0
    repair: str | None = None


def log_file_name(channel: str, day: date) -> str:
    """Return the file name of a (channel, date) chain."""
    return f"{channel}_{day.isoformat()}.log"


def iter_log_files(
    log_dir: Path | str, channel: str | None = None
) -> Iterator[tuple[str, date, Path]]:
    """Yield (channel, date, path) for every chain file, oldest first.

    Args:
        log_dir: Directory to scan (a missing directory yields nothing)
        channel: Only yield files of this channel
    """
    log_dir = Path(log_dir)
    if not log_dir.is_dir():
        return
    found = []
    for path in log_dir.iterdir():
        match = LOG_FILE_PATTERN.match(path.name)
        if not match or not path.is_file():
            continue
        if channel is not None and match["channel"] != channel:
            continue
        try:
            day = date.fromisoformat(match["date"])
        except ValueError:
            continue
        found.append((day, match["channel"], path))
    for day, name, path in sorted(found):
        yield name, day, path


class LogStore:
    """Durable per-(channel, date) append-only writer.

    File handles are cached per chain. Callers must hold the chain's append
    lock (see ChainHasher) around write(), recover_tail() and close().
    """

    def __init__(self, log_dir: Path | str) -> None:
        """Initialize log store.

        Args:
            log_dir: Directory for chain files (created if missing)
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        self._handles: dict[tuple[str, date], TextIO] = {}

    def path_for(self, channel: str, day: date) -> Path:
        """Return the path of a (channel, date) chain file."""
        return self.log_dir / log_file_name(channel, day)

    def write(self, channel: str, day: date, line: str) -> None:
        """Append one serialized entry and force it to disk.

        Args:
            channel: Chain channel
            day: Chain UTC date
            line: Serialized entry without trailing newline

        Raises:
            OSError: If the write, flush or fsync fails (the handle is dropped)
        """
        key = (channel, day)
        handle = self._handles.get(key)
        if handle is None:
            handle = open(self.path_for(channel, day), "a", encoding="utf-8", newline="\n")
            self._handles[key] = handle
        try:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        except OSError:
            self.close(channel, day)
            raise

    def recover_tail(self, channel: str, day: date) -> TailState:
        """Derive the running hash and entry count from the chain file.

        A trailing fragment without newline comes from an append that never
        completed. If it is a complete entry that chains correctly its
        newline is restored and it is kept; otherwise it is removed.

        Args:
            channel: Chain channel
            day: Chain UTC date

        Returns:
            TailState for the file (GENESIS_HASH / 0 when the file does not exist)

        Raises:
            ChainWriteError: If the last complete line is unreadable
        """
        self.close(channel, day)
        path = self.path_for(channel, day)
        if not path.exists():
            return TailState()

        count = 0
        last_line = b""
        complete_size = 0
        fragment = b""
        with open(path, "rb") as f:
            for raw in f:
                if raw.endswith(b"\n"):
                    count += 1
                    last_line = raw
                    complete_size += len(raw)
                else:
                    fragment = raw

        running_hash = GENESIS_HASH
        if count:
            running_hash = self._stored_hash(channel, day, last_line, count)

        if not fragment:
            return TailState(running_hash, count)

        if self._fragment_chains(fragment, running_hash):
            with open(path, "ab") as f:
                f.write(b"\n")
                f.flush()
                os.fsync(f.fileno())
            adopted = decode_line(fragment)
            logger.warning(
                "Completed unterminated final entry in %s at line %d",
                path.name,
                count + 1,
                extra={"channel": channel, "chain_date": day.isoformat()},
            )
            return TailState(adopted["hash"], count + 1, "adopted")

        with open(path, "r+b") as f:
            f.truncate(complete_size)
            f.flush()
            os.fsync(f.fileno())
        logger.warning(
            "Discarded incomplete trailing write (%d bytes) in %s after line %d",
            len(fragment),
            path.name,
            count,
            extra={"channel": channel, "chain_date": day.isoformat()},
        )
        return TailState(running_hash, count, "discarded")

    def close(self, channel: str, day: date) -> None:
        """Close the cached handle of one chain, if open."""
        handle = self._handles.pop((channel, day), None)
        if handle is not None:
            try:
                handle.close()
            except OSError:
                logger.exception("Failed to close %s", log_file_name(channel, day))

    def close_all(self) -> None:
        """Close every cached handle."""
        for channel, day in list(self._handles):
            self.close(channel, day)

    def iter_log_files(self, channel: str | None = None) -> Iterator[tuple[str, date, Path]]:
        """Yield (channel, date, path) for every chain file, oldest first."""
        return iter_log_files(self.log_dir, channel)

    @staticmethod
    def _stored_hash(channel: str, day: date, line: bytes, line_number: int) -> str:
        try:
            stored = decode_line(line)["hash"]
        except (ValueError, KeyError):
            raise ChainWriteError(
                channel,
                day.isoformat(),
                f"last entry (line {line_number}) is unreadable; verify the chain",
            ) from None
        if not isinstance(stored, str):
            raise ChainWriteError(
                channel, day.isoformat(), f"last entry (line {line_number}) has no valid hash"
            )
        return stored

    @staticmethod
    def _fragment_chains(fragment: bytes, previous_hash: str) -> bool:
        try:
            data = decode_line(fragment)
        except ValueError:
            return False
        if not isinstance(data.get("hash"), str):
            return False
        try:
            return entry_hash(data, previous_hash) == data["hash"]
        except SerializationError:
            return False
