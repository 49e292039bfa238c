"""Channel registry for audit log entries.

Each channel names a category of entries that share a schema and a hash
chain (one chain per channel per UTC day). The registry is a closed
enumeration: logging to an unregistered channel or operation is a
programmer error and fails immediately, with no silent coercion.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .errors import UnknownChannelOrOperation
from .models import LEVELS

# Channel names become file names, so they are restricted to a safe alphabet.
CHANNEL_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

# Operation types for the clinical audit trail
OP_CREATE = "CREATE"
OP_READ = "READ"
OP_UPDATE = "UPDATE"
OP_DELETE = "DELETE"
OP_FINALIZE = "FINALIZE"
OP_SIGN = "SIGN"
OP_AMEND = "AMEND"
OP_ERROR = "ERROR"
OP_PHI_ACCESS = "PHI_ACCESS"
OP_SEND_EMAIL = "SEND_EMAIL"
OP_SEND_SMS = "SEND_SMS"

# Operation types for operational (dashboard/performance) channels
OP_DASHBOARD_LOAD = "DASHBOARD_LOAD"
OP_METRIC_REQUEST = "METRIC_REQUEST"
OP_METRIC_CALCULATE = "METRIC_CALCULATE"
OP_DATA_AGGREGATE = "DATA_AGGREGATE"
OP_CACHE_READ = "CACHE_READ"
OP_CACHE_WRITE = "CACHE_WRITE"
OP_QUERY_EXECUTE = "QUERY_EXECUTE"
OP_REQUEST_SUMMARY = "REQUEST_SUMMARY"


@dataclass(frozen=True)
class ChannelSpec:
    """Definition of one log channel.

    Attributes:
        name: Channel name (also the log file prefix)
        operations: Operations allowed on this channel
        default_level: Level used when the caller does not pass one
        accepts_metrics: Whether performance summaries are attached to entries
        description: Human-readable purpose
    """

    name: str
    operations: frozenset[str]
    default_level: str = "INFO"
    accepts_metrics: bool = False
    description: str = ""


DEFAULT_CHANNELS: tuple[ChannelSpec, ...] = (
    ChannelSpec(
        "ehr",
        frozenset(
            {OP_CREATE, OP_READ, OP_UPDATE, OP_DELETE, OP_FINALIZE, OP_SIGN, OP_AMEND, OP_ERROR}
        ),
        description="General EHR operations",
    ),
    ChannelSpec(
        "encounter",
        frozenset({OP_CREATE, OP_READ, OP_UPDATE, OP_DELETE, OP_AMEND}),
        description="Encounter CRUD operations",
    ),
    ChannelSpec("vitals", frozenset({OP_CREATE, OP_READ, OP_UPDATE}), description="Vital signs"),
    ChannelSpec(
        "assessment", frozenset({OP_CREATE, OP_READ, OP_UPDATE}), description="Patient assessments"
    ),
    ChannelSpec(
        "treatment",
        frozenset({OP_CREATE, OP_READ, OP_UPDATE}),
        description="Treatments administered",
    ),
    ChannelSpec("signature", frozenset({OP_SIGN}), description="Digital signatures"),
    ChannelSpec(
        "finalization",
        frozenset({OP_FINALIZE, OP_SEND_EMAIL, OP_SEND_SMS}),
        description="Report finalization and notifications",
    ),
    ChannelSpec(
        "phi_access",
        frozenset({OP_PHI_ACCESS}),
        default_level="AUDIT",
        description="PHI access audit trail",
    ),
    ChannelSpec(
        "dashboard",
        frozenset({OP_DASHBOARD_LOAD, OP_ERROR}),
        accepts_metrics=True,
        description="Dashboard loads",
    ),
    ChannelSpec(
        "metrics",
        frozenset({OP_METRIC_REQUEST, OP_METRIC_CALCULATE, OP_DATA_AGGREGATE}),
        accepts_metrics=True,
        description="Metric requests and calculations",
    ),
    ChannelSpec(
        "cache",
        frozenset({OP_CACHE_READ, OP_CACHE_WRITE}),
        default_level="DEBUG",
        accepts_metrics=True,
        description="Cache hit/miss operations",
    ),
    ChannelSpec(
        "performance",
        frozenset({OP_QUERY_EXECUTE, OP_REQUEST_SUMMARY}),
        default_level="PERF",
        accepts_metrics=True,
        description="Query and response time tracking",
    ),
    ChannelSpec("access", frozenset({OP_DASHBOARD_LOAD}), description="Dashboard access patterns"),
)


class ChannelRegistry:
    """Closed registry of channels and their operations."""

    def __init__(self, channels: Iterable[ChannelSpec] = DEFAULT_CHANNELS) -> None:
        """Initialize registry.

        Args:
            channels: Channel definitions to register

        Raises:
            ValueError: If a channel name is unsafe, duplicated or has an unknown level
        """
        self._channels: dict[str, ChannelSpec] = {}
        for spec in channels:
            if not CHANNEL_NAME_PATTERN.match(spec.name):
                raise ValueError(f"Invalid channel name: {spec.name!r}")
            if spec.name in self._channels:
                raise ValueError(f"Duplicate channel: {spec.name!r}")
            if spec.default_level not in LEVELS:
                raise ValueError(f"Unknown default level for channel {spec.name!r}")
            self._channels[spec.name] = spec

    @property
    def channels(self) -> Mapping[str, ChannelSpec]:
        """Registered channels keyed by name."""
        return dict(self._channels)

    def get(self, channel: str) -> ChannelSpec:
        """Look up a channel.

        Raises:
            UnknownChannelOrOperation: If the channel is not registered
        """
        try:
            return self._channels[channel]
        except (KeyError, TypeError):
            raise UnknownChannelOrOperation(str(channel)) from None

    def validate(self, channel: str, operation: str) -> ChannelSpec:
        """Validate a channel/operation pair.

        Matching is exact and case-sensitive.

        Args:
            channel: Channel name
            operation: Operation name

        Returns:
            The channel definition

        Raises:
            UnknownChannelOrOperation: If either is not registered
        """
        spec = self.get(channel)
        if not isinstance(operation, str) or operation not in spec.operations:
            raise UnknownChannelOrOperation(channel, str(operation))
        return spec

    def __contains__(self, channel: object) -> bool:
        return channel in self._channels

    def __iter__(self):
        return iter(self._channels)


default_registry = ChannelRegistry()
