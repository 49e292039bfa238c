"""Read-only statistics over a chain file.

Counts entries by operation, result, level and user for compliance
reporting. Statistics never verify the chain; use the IntegrityVerifier
for that. Malformed lines are skipped and counted.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

from .chain.canonical import decode_line


@dataclass
class LogStatistics:
    """Aggregate counts for one (channel, date) chain file.

    Attributes:
        channel: Chain channel
        date: Chain date (YYYY-MM-DD)
        total_entries: Parsed entries
        by_operation: Entry count per operation
        by_result: Entry count per result
        by_level: Entry count per level
        by_user: Entry count per user id ("anonymous" when null)
        avg_duration_ms: Mean duration of entries that carry one (None if none do)
        malformed_lines: Lines that could not be parsed
        file_size_bytes: Size of the chain file
    """

    channel: str
    date: str
    total_entries: int = 0
    by_operation: dict[str, int] = field(default_factory=dict)
    by_result: dict[str, int] = field(default_factory=dict)
    by_level: dict[str, int] = field(default_factory=dict)
    by_user: dict[str, int] = field(default_factory=dict)
    avg_duration_ms: float | None = None
    malformed_lines: int = 0
    file_size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert statistics to dictionary for serialization."""
        return {
            "channel": self.channel,
            "date": self.date,
            "total_entries": self.total_entries,
            "by_operation": self.by_operation,
            "by_result": self.by_result,
            "by_level": self.by_level,
            "by_user": self.by_user,
            "avg_duration_ms": self.avg_duration_ms,
            "malformed_lines": self.malformed_lines,
            "file_size_bytes": self.file_size_bytes,
        }


def collect_statistics(path: Path | str, channel: str, day: date | str) -> LogStatistics:
    """Collect statistics from a chain file.

    Args:
        path: Chain file path
        channel: Chain channel (reported, not checked against entries)
        day: Chain UTC date

    Returns:
        LogStatistics

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    day_str = day.isoformat() if isinstance(day, date) else str(day)

    operations: Counter[str] = Counter()
    results: Counter[str] = Counter()
    levels: Counter[str] = Counter()
    users: Counter[str] = Counter()
    durations: list[float] = []
    total = 0
    malformed = 0

    with open(path, "rb") as f:
        for raw in f:
            if not raw.strip():
                continue
            try:
                entry = decode_line(raw)
            except ValueError:
                malformed += 1
                continue

            total += 1
            operations[str(entry.get("operation", "unknown"))] += 1
            results[str(entry.get("result", "unknown"))] += 1
            levels[str(entry.get("level", "unknown"))] += 1
            user = entry.get("user_id")
            users["anonymous" if user is None else str(user)] += 1

            duration = entry.get("duration_ms")
            if isinstance(duration, (int, float)) and not isinstance(duration, bool):
                durations.append(duration)

    return LogStatistics(
        channel=channel,
        date=day_str,
        total_entries=total,
        by_operation=dict(operations),
        by_result=dict(results),
        by_level=dict(levels),
        by_user=dict(users),
        avg_duration_ms=round(sum(durations) / len(durations), 2) if durations else None,
        malformed_lines=malformed,
        file_size_bytes=path.stat().st_size,
    )
