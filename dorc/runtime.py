from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from .models import Condition, HealthStatus, RevisionDescriptor
from .resolver import StartPlan


def runtime_name(service_id: str, revision_id: str, container: str) -> str:
    """Name of the container on the execution platform.

    Includes the revision so old and new revisions can run side by side.
    """
    return f"dorc-{service_id}-{revision_id}-{container}"


@dataclass
class ContainerInstance:
    container_name: str
    revision_id: str
    runtime_name: str
    essential: bool = True
    started_at: float | None = None  # time.monotonic()
    health_status: HealthStatus = HealthStatus.UNKNOWN
    adopted: bool = False  # already running when the attempt began
    launch_requested: bool = False
    start_task: asyncio.Task | None = field(default=None, repr=False)  # in-flight platform start
    _started: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _healthy: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def mark_started(self, adopted: bool = False) -> None:
        self.started_at = time.monotonic()
        self.adopted = adopted
        self._started.set()

    @property
    def started(self) -> asyncio.Event:
        return self._started

    def set_status(self, status: HealthStatus) -> bool:
        """Record a reported status. Returns True if it changed."""
        if status == self.health_status:
            return False
        self.health_status = status
        if status == HealthStatus.HEALTHY:
            self._healthy.set()
        else:
            self._healthy.clear()
        return True

    def reached(self, condition: Condition) -> asyncio.Event:
        return self._healthy if condition == Condition.HEALTHY else self._started


class RolloutAttempt:
    """Ephemeral state of one attempt to bring a revision up.

    Owned by the controller for the duration of the attempt and discarded on
    commit or rollback.
    """

    def __init__(self, service_id: str, revision: RevisionDescriptor, plan: StartPlan, adopt: bool = False):
        self.service_id = service_id
        self.revision = revision
        self.plan = plan
        # adopt: containers already running are re-validated instead of restarted
        self.adopt = adopt
        self.instances: dict[str, ContainerInstance] = {}
        for name in plan.order:
            spec = revision.container(name)
            self.instances[name] = ContainerInstance(
                container_name=name,
                revision_id=revision.revision_id,
                runtime_name=runtime_name(service_id, revision.revision_id, name),
                essential=spec.essential,
            )
        self.abort_requested = asyncio.Event()
        self.abort_reason: str | None = None

    def request_abort(self, reason: str) -> None:
        if not self.abort_requested.is_set():
            self.abort_reason = reason
            self.abort_requested.set()

    def launched(self) -> list[ContainerInstance]:
        """Instances the platform was asked to start, in start order."""
        return [i for i in self.instances.values() if i.launch_requested]
