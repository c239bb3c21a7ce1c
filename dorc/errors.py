from __future__ import annotations


class DorcError(Exception):
    """Base class for every error the orchestrator reports to callers.

    ``code`` is the stable machine-readable name used by the HTTP API,
    ``exit_code`` is what the CLI exits with when it sees that code.
    """

    code = "error"
    http_status = 500
    exit_code = 1


class InvalidRevisionError(DorcError):
    code = "invalid_revision"
    http_status = 422
    exit_code = 3


class CycleError(InvalidRevisionError):
    code = "dependency_cycle"
    exit_code = 4

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle between containers: {path}")


class UnknownReferenceError(InvalidRevisionError):
    code = "unknown_reference"
    exit_code = 5

    def __init__(self, container: str, reference: str):
        self.container = container
        self.reference = reference
        super().__init__(f"Container '{container}' depends on unknown container '{reference}'")


class RolloutInProgressError(DorcError):
    code = "rollout_in_progress"
    http_status = 409
    exit_code = 6


class ConflictError(DorcError):
    code = "conflict"
    http_status = 409
    exit_code = 7


class ServiceNotFoundError(DorcError):
    code = "not_found"
    http_status = 404
    exit_code = 8


class RolloutError(DorcError):
    """A runtime failure during LAUNCHING/STABILIZING.

    These never reach operators directly: the controller converts them into a
    rollback and records the message on the service.
    """

    code = "rollout_failed"
    exit_code = 9


class DependencyTimeoutError(RolloutError):
    code = "dependency_timeout"
    exit_code = 10

    def __init__(self, container: str | None, dependency: str, condition: str, timeout_s: float):
        # container is None for the final readiness gate of the rollout itself
        self.container = container
        self.dependency = dependency
        self.condition = condition
        self.timeout_s = timeout_s
        waiter = f"Container '{container}'" if container else "Rollout"
        super().__init__(f"{waiter} waited {timeout_s:g}s for '{dependency}' to become {condition}")


class EssentialContainerError(RolloutError):
    code = "essential_container_failed"


class ContainerStartError(RolloutError):
    code = "container_start_failed"


class ConfigResolutionError(RolloutError):
    code = "config_resolution_failed"


class RolloutAbortedError(RolloutError):
    code = "rollout_aborted"


class ServiceFailedError(DorcError):
    """Reported by the CLI when a rollout ends in the FAILED phase."""

    code = "service_failed"
    exit_code = 11


ERRORS_BY_CODE: dict[str, type[DorcError]] = {
    cls.code: cls
    for cls in (
        DorcError,
        InvalidRevisionError,
        CycleError,
        UnknownReferenceError,
        RolloutInProgressError,
        ConflictError,
        ServiceNotFoundError,
        RolloutError,
        DependencyTimeoutError,
        EssentialContainerError,
        ContainerStartError,
        ConfigResolutionError,
        RolloutAbortedError,
        ServiceFailedError,
    )
}


def exit_code_for(code: str | None) -> int:
    cls = ERRORS_BY_CODE.get(code or "")
    return cls.exit_code if cls else 1
