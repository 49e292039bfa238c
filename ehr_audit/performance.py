"""Performance Aggregator.

Request-scoped collection of query and cache metrics for the operational
channels (dashboard, metrics, cache, performance). A RequestMetrics object
is created per request and passed explicitly to AuditLogger.log(), so
concurrent requests never share counters.

Performance data is operational metadata, not a compliance record: it is
routed through the same redaction and chaining pipeline as every other
entry but never affects chain durability.

Thresholds:
- Slow query: >= 100 ms
- Slow request: >= 500 ms total
- Query count: more than 10 queries per request
- Cache miss rate: >= 50%, evaluated only after 5 or more cache lookups
"""

import re
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

QUERY_DESCRIPTION_MAX_LENGTH = 500

_QUOTED_VALUE = re.compile(r"= '[^']*'")
_NUMERIC_VALUE = re.compile(r"= \d+")


@dataclass(frozen=True)
class PerformanceThresholds:
    """Fixed performance thresholds.

    Attributes:
        slow_query_ms: Queries at or above this time are slow
        slow_request_ms: Requests at or above this time are slow
        max_queries: More queries than this per request is excessive
        cache_miss_rate: Miss rate at or above this fraction is excessive
        min_cache_samples: Lookups required before the miss rate is evaluated
    """

    slow_query_ms: float = 100.0
    slow_request_ms: float = 500.0
    max_queries: int = 10
    cache_miss_rate: float = 0.5
    min_cache_samples: int = 5


DEFAULT_THRESHOLDS = PerformanceThresholds()


def sanitize_query_description(description: str) -> str:
    """Strip literal values from a query description.

    Example:
        >>> sanitize_query_description("SELECT * FROM visits WHERE id = 42 AND site = 'north'")
        "SELECT * FROM visits WHERE id = [NUMBER] AND site = '[VALUE]'"
    """
    sanitized = _QUOTED_VALUE.sub("= '[VALUE]'", str(description))
    sanitized = _NUMERIC_VALUE.sub("= [NUMBER]", sanitized)
    return sanitized[:QUERY_DESCRIPTION_MAX_LENGTH]


@dataclass(frozen=True)
class QueryRecord:
    """One recorded query."""

    description: str
    elapsed_ms: float
    row_count: int = 0


@dataclass
class PerformanceSummary:
    """Aggregated metrics of one request.

    Attributes:
        total_time_ms: Time since start() in milliseconds
        query_count: Number of recorded queries
        total_query_time_ms: Sum of query times
        slow_query_count: Queries at or above the slow query threshold
        slow_queries: Sanitized descriptions and times of slow queries
        cache_hits: Cache lookups that hit
        cache_misses: Cache lookups that missed
        cache_hit_rate: Hit fraction rounded to 2 places (0.0 without lookups)
        thresholds_exceeded: Flags for slow_request, max_queries and cache_miss_rate
        warnings: Human-readable description of each exceeded threshold
        level: WARNING when any threshold is exceeded, else INFO
    """

    total_time_ms: int
    query_count: int
    total_query_time_ms: int
    slow_query_count: int
    slow_queries: list[dict[str, Any]] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = 0.0
    thresholds_exceeded: dict[str, bool] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    level: str = "INFO"

    @property
    def exceeded(self) -> bool:
        """Whether any threshold was exceeded."""
        return any(self.thresholds_exceeded.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert summary to dictionary for entry details."""
        return asdict(self)


class RequestMetrics:
    """Per-request metrics collector.

    Example:
        >>> metrics = RequestMetrics()
        >>> metrics.record_query("SELECT ... WHERE clinic_id = 3", 12.5, row_count=40)
        >>> metrics.record_cache("dashboard:clinic:3", hit=True)
        >>> audit.log("dashboard", "DASHBOARD_LOAD", {"user_id": 7}, metrics=metrics)
    """

    def __init__(
        self,
        thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize collector and start the request timer.

        Args:
            thresholds: Thresholds used by summary()
            clock: Monotonic clock returning seconds
        """
        self.thresholds = thresholds
        self._clock = clock
        self._lock = threading.Lock()
        self.start()

    def start(self) -> None:
        """Reset all counters and restart the request timer."""
        with self._lock:
            self._started = self._clock()
            self._queries: list[QueryRecord] = []
            self._cache_hits = 0
            self._cache_misses = 0

    def record_query(self, description: str, elapsed_ms: float, row_count: int = 0) -> None:
        """Record one executed query.

        Args:
            description: Query or query description (literal values are stripped)
            elapsed_ms: Execution time in milliseconds
            row_count: Rows returned

        Raises:
            ValueError: If elapsed_ms or row_count is negative
        """
        if elapsed_ms < 0 or row_count < 0:
            raise ValueError("elapsed_ms and row_count must be non-negative")
        record = QueryRecord(sanitize_query_description(description), float(elapsed_ms), row_count)
        with self._lock:
            self._queries.append(record)

    def record_cache(self, key: str, hit: bool) -> None:
        """Record one cache lookup.

        Args:
            key: Cache key (not retained)
            hit: Whether the lookup hit
        """
        with self._lock:
            if hit:
                self._cache_hits += 1
            else:
                self._cache_misses += 1

    def elapsed_ms(self) -> float:
        """Milliseconds since start()."""
        return (self._clock() - self._started) * 1000

    def cache_hit_rate(self) -> float:
        """Cache hit fraction rounded to 2 places (0.0 without lookups)."""
        total = self._cache_hits + self._cache_misses
        if total == 0:
            return 0.0
        return round(self._cache_hits / total, 2)

    def summary(self) -> PerformanceSummary:
        """Aggregate the request's metrics and evaluate thresholds."""
        t = self.thresholds
        with self._lock:
            total_ms = self.elapsed_ms()
            queries = list(self._queries)
            hits, misses = self._cache_hits, self._cache_misses
            hit_rate = self.cache_hit_rate()

        slow = [q for q in queries if q.elapsed_ms >= t.slow_query_ms]
        lookups = hits + misses
        miss_rate = misses / lookups if lookups else 0.0

        exceeded = {
            "slow_request": total_ms >= t.slow_request_ms,
            "max_queries": len(queries) > t.max_queries,
            "cache_miss_rate": lookups >= t.min_cache_samples and miss_rate >= t.cache_miss_rate,
        }

        warnings = []
        if exceeded["slow_request"]:
            warnings.append(f"Request time exceeded {t.slow_request_ms:g}ms threshold")
        if exceeded["max_queries"]:
            warnings.append(f"Query count ({len(queries)}) exceeded threshold of {t.max_queries}")
        if exceeded["cache_miss_rate"]:
            warnings.append(f"Cache miss rate exceeded {t.cache_miss_rate:.0%}")

        return PerformanceSummary(
            total_time_ms=int(total_ms),
            query_count=len(queries),
            total_query_time_ms=int(sum(q.elapsed_ms for q in queries)),
            slow_query_count=len(slow),
            slow_queries=[
                {"query_description": q.description, "elapsed_ms": round(q.elapsed_ms, 2)}
                for q in slow
            ],
            cache_hits=hits,
            cache_misses=misses,
            cache_hit_rate=hit_rate,
            thresholds_exceeded=exceeded,
            warnings=warnings,
            level="WARNING" if any(exceeded.values()) else "INFO",
        )
