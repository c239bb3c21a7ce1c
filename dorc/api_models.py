from __future__ import annotations

from pydantic import BaseModel, Field

from .models import (
    Condition,
    ContainerSpec,
    Dependency,
    HealthCheck,
    Phase,
    RevisionDescriptor,
    Service,
    new_revision_id,
)


class HealthCheckDocument(BaseModel):
    command: list[str] | None = Field(None, description="Command run inside the container; exit 0 is healthy")
    endpoint: str | None = Field(None, description="HTTP path probed on `port`; 2xx is healthy")
    port: int | None = Field(None, ge=1, le=65535)
    interval_s: float = Field(10.0, gt=0)
    timeout_s: float = Field(5.0, gt=0)
    retries: int = Field(3, ge=1, le=100)
    start_period_s: float = Field(0.0, ge=0)

    def to_check(self) -> HealthCheck:
        return HealthCheck(
            command=tuple(self.command) if self.command is not None else None,
            endpoint=self.endpoint,
            port=self.port,
            interval_s=self.interval_s,
            timeout_s=self.timeout_s,
            retries=self.retries,
            start_period_s=self.start_period_s,
        )


class ContainerDocument(BaseModel):
    name: str = Field(..., description="Container name, unique within the revision (dns-safe)")
    image_ref: str = Field(..., description="Image digest or name:tag")
    essential: bool = True
    depends_on: dict[str, Condition] = Field(default_factory=dict, description="container -> STARTED|HEALTHY")
    health_check: HealthCheckDocument | None = None
    config_refs: dict[str, str] = Field(default_factory=dict, description="ENV_VAR -> config source id")
    command: list[str] | None = None

    def to_spec(self) -> ContainerSpec:
        return ContainerSpec(
            name=self.name,
            image_ref=self.image_ref,
            essential=self.essential,
            depends_on=tuple(Dependency(n, c) for n, c in self.depends_on.items()),
            health_check=self.health_check.to_check() if self.health_check else None,
            config_refs=dict(self.config_refs),
            command=tuple(self.command) if self.command is not None else None,
        )


class RevisionDocument(BaseModel):
    revision_id: str | None = Field(None, description="Defaults to a timestamp-derived id")
    containers: list[ContainerDocument]

    def to_descriptor(self) -> RevisionDescriptor:
        return RevisionDescriptor(
            revision_id=self.revision_id or new_revision_id(),
            containers=tuple(c.to_spec() for c in self.containers),
        )

    @classmethod
    def from_descriptor(cls, revision: RevisionDescriptor) -> "RevisionDocument":
        containers = []
        for c in revision.containers:
            hc = c.health_check
            containers.append(
                ContainerDocument(
                    name=c.name,
                    image_ref=c.image_ref,
                    essential=c.essential,
                    depends_on={d.name: d.condition for d in c.depends_on},
                    health_check=HealthCheckDocument(
                        command=list(hc.command) if hc.command is not None else None,
                        endpoint=hc.endpoint,
                        port=hc.port,
                        interval_s=hc.interval_s,
                        timeout_s=hc.timeout_s,
                        retries=hc.retries,
                        start_period_s=hc.start_period_s,
                    )
                    if hc
                    else None,
                    config_refs=dict(c.config_refs),
                    command=list(c.command) if c.command is not None else None,
                )
            )
        return cls(revision_id=revision.revision_id, containers=containers)


class AbortRequest(BaseModel):
    reason: str = Field("aborted by operator", max_length=500)


class ServiceStatus(BaseModel):
    service_id: str
    current_revision: str | None
    target_revision: str | None
    phase: Phase
    generation: int
    last_error: str | None
    updated_at: str

    @classmethod
    def from_service(cls, service: Service) -> "ServiceStatus":
        return cls(
            service_id=service.service_id,
            current_revision=service.current_revision,
            target_revision=service.target_revision,
            phase=service.phase,
            generation=service.generation,
            last_error=service.last_error,
            updated_at=service.updated_at,
        )
