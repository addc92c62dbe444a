"""Value types shared across the harness.

Endpoint descriptors, teardown policy, instance states and the JSON health
report exposed by generated projects.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum, Flag
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class TeardownPolicy(Flag):
    """What survives an instance's teardown.

    ``KEEP_PROJECT_RUNNING`` also keeps the directory: a process cannot keep
    running out of a deleted directory.
    """

    DELETE_ALL = 0
    KEEP_PROJECT_DIRECTORY = 1
    KEEP_PROJECT_RUNNING = 2
    KEEP_TEMPLATE_INSTALLED = 4

    @property
    def keeps_directory(self) -> bool:
        return bool(self & (TeardownPolicy.KEEP_PROJECT_DIRECTORY | TeardownPolicy.KEEP_PROJECT_RUNNING))

    @property
    def keeps_running(self) -> bool:
        return bool(self & TeardownPolicy.KEEP_PROJECT_RUNNING)

    @property
    def keeps_template_installed(self) -> bool:
        return bool(self & TeardownPolicy.KEEP_TEMPLATE_INSTALLED)


class InstanceState(Enum):
    """Lifecycle states of a template project instance."""

    CREATED = "created"
    PATCHED = "patched"
    LAUNCHED = "launched"
    READY = "ready"
    IN_USE = "in_use"
    TORN_DOWN = "torn_down"


# Allowed transitions; any state may move to TORN_DOWN. Moving back to LAUNCHED
# from a later state is a restart after the previous process was stopped.
ALLOWED_TRANSITIONS: dict[InstanceState, frozenset[InstanceState]] = {
    InstanceState.CREATED: frozenset({InstanceState.PATCHED, InstanceState.LAUNCHED}),
    InstanceState.PATCHED: frozenset({InstanceState.PATCHED, InstanceState.LAUNCHED}),
    InstanceState.LAUNCHED: frozenset({InstanceState.READY, InstanceState.LAUNCHED}),
    InstanceState.READY: frozenset({InstanceState.READY, InstanceState.IN_USE, InstanceState.LAUNCHED}),
    InstanceState.IN_USE: frozenset({InstanceState.IN_USE, InstanceState.LAUNCHED}),
    InstanceState.TORN_DOWN: frozenset(),
}


def can_transition(current: InstanceState, requested: InstanceState) -> bool:
    if requested is InstanceState.TORN_DOWN:
        return True
    return requested in ALLOWED_TRANSITIONS[current]


# =============================================================================
# ENDPOINT DESCRIPTORS
# =============================================================================


@dataclass(frozen=True)
class HttpEndpoint:
    """HTTP endpoint probed with a GET request.

    Without ``expected_status`` or ``predicate``, any response below 500 counts
    as ready: the application answering at all (even with 404 for an unknown
    route) shows the server is up.

    :param url: Absolute URL to request
    :param expected_status: Status codes that count as ready
    :param headers: Extra request headers, e.g. authentication
    :param predicate: Custom success check on the response, overrides the status rule
    """

    url: str
    expected_status: frozenset[int] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    predicate: Callable[[httpx.Response], bool] | None = None

    def is_ready(self, response: httpx.Response) -> bool:
        if self.predicate is not None:
            return self.predicate(response)
        if self.expected_status is not None:
            return response.status_code in self.expected_status
        return response.status_code < 500

    def describe(self) -> str:
        return f"GET {self.url}"

    def __str__(self) -> str:
        return self.describe()


@dataclass(frozen=True)
class TcpEndpoint:
    """TCP endpoint probed by connecting and, optionally, reading to end of stream.

    :param port: Local port to connect to
    :param host: Host to connect to
    :param read_payload: Also read until EOF and require the payload to be a
        parseable JSON health report
    :param predicate: Custom success check on the decoded payload (implies ``read_payload``)
    """

    port: int
    host: str = "127.0.0.1"
    read_payload: bool = False
    predicate: Callable[[str], bool] | None = None

    def __post_init__(self):
        if self.port <= 0:
            raise ValueError(f"TCP port should be greater than zero, got {self.port}")

    @property
    def reads_payload(self) -> bool:
        return self.read_payload or self.predicate is not None

    def is_ready(self, payload: str | None) -> bool:
        if not self.reads_payload:
            return True
        if not payload or not payload.strip():
            return False
        if self.predicate is not None:
            return self.predicate(payload)
        try:
            HealthReport.parse(payload)
        except ValidationError:
            return False
        return True

    def describe(self) -> str:
        return f"tcp://{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.describe()


EndpointDescriptor = HttpEndpoint | TcpEndpoint


# =============================================================================
# HEALTH REPORT
# =============================================================================


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"


class HealthReport(BaseModel):
    """JSON health report returned by generated projects over HTTP or TCP."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    status: HealthStatus
    total_duration: str | None = Field(default=None, alias="totalDuration")
    entries: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        # Serializers differ in casing ("healthy", "Healthy") and may send the enum ordinal
        if isinstance(value, int):
            return [HealthStatus.UNHEALTHY, HealthStatus.DEGRADED, HealthStatus.HEALTHY][value]
        if isinstance(value, str):
            return value.strip().capitalize()
        return value

    @classmethod
    def parse(cls, payload: str | bytes) -> "HealthReport":
        return cls.model_validate_json(payload)

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY
