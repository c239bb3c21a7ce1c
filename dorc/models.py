from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from .errors import InvalidRevisionError


NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
REVISION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-\._]{0,63}$")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_revision_id() -> str:
    """Timestamp-derived id; lexical order matches creation order."""
    return "r" + datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def validate_name(kind: str, name: str) -> None:
    if not NAME_RE.match(name or ""):
        raise InvalidRevisionError(
            f"Invalid {kind} name '{name}'. Use lowercase letters/numbers and hyphen, "
            "starting with a letter (max 63 chars)."
        )


def validate_revision_id(revision_id: str) -> None:
    if not REVISION_RE.match(revision_id or ""):
        raise InvalidRevisionError(
            f"Invalid revision id '{revision_id}'. Use letters/numbers and -._ (max 64 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes can only reach the container itself.
    if not path.startswith("/"):
        raise InvalidRevisionError("health_check endpoint must start with '/'.")
    if "://" in path or ".." in path:
        raise InvalidRevisionError("health_check endpoint must be a simple absolute path (no scheme, no '..').")


class Phase(str, Enum):
    IDLE = "IDLE"
    LAUNCHING = "LAUNCHING"
    STABILIZING = "STABILIZING"
    COMMITTED = "COMMITTED"
    ROLLING_BACK = "ROLLING_BACK"
    FAILED = "FAILED"


IN_FLIGHT_PHASES = frozenset({Phase.LAUNCHING, Phase.STABILIZING, Phase.ROLLING_BACK})


class Condition(str, Enum):
    STARTED = "STARTED"
    HEALTHY = "HEALTHY"


class HealthStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    STARTING = "STARTING"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class HealthCheck:
    """How to probe a container.

    Exactly one of ``command`` (run inside the container, exit code 0 is a
    success) or ``endpoint`` (HTTP path on ``port``, any 2xx is a success).
    """

    command: tuple[str, ...] | None = None
    endpoint: str | None = None
    port: int | None = None
    interval_s: float = 10.0
    timeout_s: float = 5.0
    retries: int = 3
    start_period_s: float = 0.0

    def __post_init__(self) -> None:
        if (self.command is None) == (self.endpoint is None):
            raise InvalidRevisionError("health_check needs exactly one of 'command' or 'endpoint'.")
        if self.command is not None and not self.command:
            raise InvalidRevisionError("health_check command must not be empty.")
        if self.endpoint is not None:
            validate_health_path(self.endpoint)
            if self.port is None or not 1 <= self.port <= 65535:
                raise InvalidRevisionError("health_check endpoint needs a port between 1 and 65535.")
        if self.interval_s <= 0 or self.timeout_s <= 0:
            raise InvalidRevisionError("health_check interval and timeout must be positive.")
        if self.retries < 1:
            raise InvalidRevisionError("health_check retries must be at least 1.")
        if self.start_period_s < 0:
            raise InvalidRevisionError("health_check start_period must not be negative.")


@dataclass(frozen=True)
class Dependency:
    name: str
    condition: Condition = Condition.HEALTHY


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    image_ref: str
    essential: bool = True
    depends_on: tuple[Dependency, ...] = ()
    health_check: HealthCheck | None = None
    # compared, not hashed: specs hash on their immutable fields
    config_refs: dict[str, str] = field(default_factory=dict, hash=False)
    command: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        validate_name("container", self.name)
        if not self.image_ref:
            raise InvalidRevisionError(f"Container '{self.name}' has no image_ref.")
        seen: set[str] = set()
        for dep in self.depends_on:
            if dep.name in seen:
                raise InvalidRevisionError(f"Container '{self.name}' lists dependency '{dep.name}' twice.")
            seen.add(dep.name)

    def ready_condition(self) -> Condition:
        """Condition at which this container counts as up for the rollout."""
        return Condition.HEALTHY if self.health_check is not None else Condition.STARTED


@dataclass(frozen=True)
class RevisionDescriptor:
    revision_id: str
    containers: tuple[ContainerSpec, ...]

    def __post_init__(self) -> None:
        validate_revision_id(self.revision_id)
        if not self.containers:
            raise InvalidRevisionError(f"Revision '{self.revision_id}' has no containers.")
        names = [c.name for c in self.containers]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise InvalidRevisionError(f"Duplicate container names in revision: {', '.join(dupes)}")

    def container(self, name: str) -> ContainerSpec:
        for c in self.containers:
            if c.name == name:
                return c
        raise KeyError(name)

    def essential_containers(self) -> list[ContainerSpec]:
        return [c for c in self.containers if c.essential]


@dataclass(frozen=True)
class Service:
    service_id: str
    current_revision: str | None = None
    target_revision: str | None = None
    phase: Phase = Phase.IDLE
    generation: int = 0  # 0 means "never saved"
    last_error: str | None = None
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        in_flight = self.phase in IN_FLIGHT_PHASES
        if in_flight != (self.target_revision is not None):
            raise ValueError(
                f"Service '{self.service_id}': target_revision must be set exactly when rolling "
                f"(phase={self.phase.value}, target={self.target_revision!r})"
            )

    @property
    def in_flight(self) -> bool:
        return self.phase in IN_FLIGHT_PHASES

    def evolve(self, **changes) -> "Service":
        changes.setdefault("updated_at", utc_now())
        return replace(self, **changes)
