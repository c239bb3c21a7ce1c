from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Callable

from . import alerts, db
from .config_refs import ConfigResolver
from .db import StateStore
from .docker_ops import ContainerRuntime
from .errors import (
    ConflictError,
    DependencyTimeoutError,
    EssentialContainerError,
    RolloutAbortedError,
    RolloutInProgressError,
    ServiceNotFoundError,
)
from .health import HealthMonitor
from .models import Condition, ContainerSpec, HealthStatus, Phase, RevisionDescriptor, Service, validate_name
from .resolver import resolve
from .runtime import ContainerInstance, RolloutAttempt, runtime_name
from .settings import settings

logger = logging.getLogger(__name__)


def _first_error(exc: BaseException) -> BaseException:
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class RolloutController:
    """Drives services from their current revision to a target revision.

    Phases: IDLE -> LAUNCHING -> STABILIZING -> COMMITTED, and from
    LAUNCHING/STABILIZING -> ROLLING_BACK -> COMMITTED (old revision) or
    FAILED. The controller is the only writer of a Service record and every
    write is a compare-and-swap through the store; on a conflict the
    in-flight transition is abandoned, never overwritten.

    Each rollout attempt runs its container launches and health watches in
    one TaskGroup, so a failure, an abort or a shutdown cancels every
    outstanding probe together.
    """

    def __init__(
        self,
        store: StateStore,
        runtime: ContainerRuntime,
        monitor: HealthMonitor | None = None,
        config: ConfigResolver | None = None,
        dependency_timeout_s: float | None = None,
        stabilization_s: float | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.monitor = monitor or HealthMonitor(runtime)
        self.config = config or ConfigResolver()
        self.dependency_timeout_s = (
            settings.dependency_timeout_s if dependency_timeout_s is None else dependency_timeout_s
        )
        self.stabilization_s = settings.stabilization_s if stabilization_s is None else stabilization_s
        self._tasks: dict[str, asyncio.Task] = {}
        self._attempts: dict[str, RolloutAttempt] = {}

    # ---- operator surface -------------------------------------------------

    def get_status(self, service_id: str) -> Service:
        return self.store.load(service_id)

    async def deploy(self, service_id: str, revision: RevisionDescriptor) -> Service:
        """Start rolling ``service_id`` towards ``revision``.

        Returns the service as saved in LAUNCHING (or unchanged for a no-op)
        without waiting for the outcome; use ``wait`` for that. Validation
        errors are raised before anything is written.
        """
        validate_name("service", service_id)
        plan = resolve(revision)

        if service_id in self._tasks:
            raise RolloutInProgressError(f"A rollout of '{service_id}' is already in progress")
        try:
            service = self.store.load(service_id)
        except ServiceNotFoundError:
            service = Service(service_id=service_id)
        if service.in_flight:
            raise RolloutInProgressError(
                f"Service '{service_id}' is {service.phase.value} towards {service.target_revision}"
            )
        if service.phase in (Phase.IDLE, Phase.COMMITTED) and service.current_revision == revision.revision_id:
            # same id must mean same content, even when there is nothing to do
            self.store.save_revision(service_id, revision)
            db.log_event(
                "INFO",
                f"Revision {revision.revision_id} is already current; nothing to do",
                service_id=service_id,
                revision_id=revision.revision_id,
                kind="deploy",
            )
            return service

        self.store.save_revision(service_id, revision)
        previous = None
        if service.current_revision and service.current_revision != revision.revision_id:
            previous = self.store.get_revision(service_id, service.current_revision)

        service = self._transition(
            service, Phase.LAUNCHING, target_revision=revision.revision_id, last_error=None
        )
        attempt = RolloutAttempt(service_id, revision, plan)
        self._attempts[service_id] = attempt
        self._tasks[service_id] = asyncio.create_task(
            self._drive(service, attempt, previous), name=f"rollout-{service_id}"
        )
        return service

    def abort(self, service_id: str, reason: str = "aborted by operator") -> Service:
        """Force an in-flight LAUNCHING/STABILIZING rollout into ROLLING_BACK.

        Safe to call in any phase; outside of a rollout it changes nothing.
        A rollout left in flight by a previous process is recovered.
        """
        service = self.store.load(service_id)
        if service.phase not in (Phase.LAUNCHING, Phase.STABILIZING):
            return service
        attempt = self._attempts.get(service_id)
        if attempt is None:
            return self.resume(service_id)
        attempt.request_abort(reason)
        db.log_event(
            "WARN",
            f"Abort requested: {reason}",
            service_id=service_id,
            revision_id=attempt.revision.revision_id,
            kind="abort",
        )
        return service

    def resume(self, service_id: str) -> Service:
        """Recover a rollout that no task in this process owns.

        The record is driven through ROLLING_BACK like any failed rollout:
        whatever the dead owner launched for the target revision is torn down
        and the current revision is re-validated.
        """
        service = self.store.load(service_id)
        if not service.in_flight or service_id in self._tasks:
            return service
        target = self.store.get_revision(service_id, service.target_revision)
        previous = None
        if service.current_revision and service.current_revision != service.target_revision:
            previous = self.store.get_revision(service_id, service.current_revision)
        names = self._revision_names(service_id, target) if target else []
        self._tasks[service_id] = asyncio.create_task(
            self._recover(service, names, previous), name=f"recover-{service_id}"
        )
        return service

    async def wait(self, service_id: str) -> Service:
        """Wait for the rollout of ``service_id`` (if any) to finish."""
        task = self._tasks.get(service_id)
        if task is not None:
            await asyncio.shield(task)
        return self.store.load(service_id)

    def in_progress(self, service_id: str) -> bool:
        return service_id in self._tasks

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.monitor.aclose()

    # ---- rollout ----------------------------------------------------------

    async def _drive(self, service: Service, attempt: RolloutAttempt, previous: RevisionDescriptor | None) -> None:
        service_id = service.service_id
        target = attempt.revision

        def stabilizing() -> None:
            nonlocal service
            service = self._transition(service, Phase.STABILIZING)

        try:
            try:
                await self._bring_up(attempt, hold_s=self.stabilization_s, on_ready=stabilizing)
            except ConflictError as e:
                await self._abandon(service_id, attempt, e)
                return
            except Exception as e:
                await self._settle_launches(attempt)
                launched = [i.runtime_name for i in reversed(attempt.launched())]
                await self._roll_back(service, target.revision_id, launched, previous, _describe(e))
                return

            try:
                service = self._transition(
                    service,
                    Phase.COMMITTED,
                    current_revision=target.revision_id,
                    target_revision=None,
                    last_error=None,
                )
            except ConflictError as e:
                await self._abandon(service_id, attempt, e)
                return
            if previous is not None:
                await self._teardown(service_id, self._revision_names(service_id, previous))
        except asyncio.CancelledError:
            # Controller shutdown: the record stays in flight for recovery,
            # but nothing this attempt started is left running.
            await self._settle_launches(attempt)
            await self._teardown(service_id, [i.runtime_name for i in reversed(attempt.launched())])
            raise
        finally:
            if self._tasks.get(service_id) is asyncio.current_task():
                del self._tasks[service_id]
            if self._attempts.get(service_id) is attempt:
                del self._attempts[service_id]

    async def _recover(self, service: Service, names: list[str], previous: RevisionDescriptor | None) -> None:
        service_id = service.service_id
        try:
            reason = service.last_error or f"rollout interrupted in {service.phase.value}"
            await self._roll_back(service, service.target_revision, names, previous, reason)
        finally:
            if self._tasks.get(service_id) is asyncio.current_task():
                del self._tasks[service_id]

    async def _roll_back(
        self,
        service: Service,
        attempted_revision: str,
        names: list[str],
        previous: RevisionDescriptor | None,
        reason: str,
    ) -> None:
        service_id = service.service_id
        logger.warning("rolling back %s from %s: %s", service_id, attempted_revision, reason)
        try:
            if service.phase != Phase.ROLLING_BACK:
                service = self._transition(service, Phase.ROLLING_BACK, last_error=reason)
        except ConflictError as e:
            await self._teardown(service_id, names)
            self._conflict_event(service_id, attempted_revision, e)
            return
        await self._teardown(service_id, names)

        if previous is None:
            outcome, error = Phase.FAILED, f"{reason}; no previous revision to restore"
        else:
            restore = RolloutAttempt(service_id, previous, resolve(previous), adopt=True)
            try:
                await self._bring_up(restore, hold_s=0)
                outcome, error = Phase.COMMITTED, reason
            except Exception as e:
                outcome, error = Phase.FAILED, f"{reason}; previous revision unhealthy: {_describe(e)}"

        try:
            service = self._transition(service, outcome, target_revision=None, last_error=error)
        except ConflictError as e:
            self._conflict_event(service_id, attempted_revision, e)
            return
        await asyncio.to_thread(alerts.rollout_outcome, service, attempted_revision, error)

    async def _bring_up(
        self,
        attempt: RolloutAttempt,
        hold_s: float,
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        """Launch a revision and return once it is up and has held.

        Raises the first error of the attempt (dependency timeout, essential
        container failure, abort, store conflict) after every outstanding
        launch and watch has been cancelled.
        """
        children: list[asyncio.Task] = []
        try:
            async with asyncio.TaskGroup() as tg:
                children.append(tg.create_task(self._watch_abort(attempt)))
                for name in attempt.plan.order:
                    children.append(tg.create_task(self._run_container(attempt, name)))

                for spec in attempt.revision.essential_containers():
                    await self._wait_for(attempt, None, spec.name, spec.ready_condition())
                if on_ready is not None:
                    on_ready()
                if hold_s > 0:
                    await asyncio.sleep(hold_s)

                for inst in attempt.instances.values():
                    if not inst.essential and not inst.started.is_set() and inst.health_status != HealthStatus.STOPPED:
                        db.log_event(
                            "WARN",
                            f"Non-essential container {inst.container_name} had not started when the rollout settled",
                            service_id=attempt.service_id,
                            revision_id=attempt.revision.revision_id,
                            kind="container",
                        )
                for t in children:
                    t.cancel()
        except BaseExceptionGroup as eg:
            raise _first_error(eg) from None

    async def _watch_abort(self, attempt: RolloutAttempt) -> None:
        await attempt.abort_requested.wait()
        raise RolloutAbortedError(attempt.abort_reason or "aborted")

    async def _wait_for(self, attempt: RolloutAttempt, waiter: str | None, dependency: str, condition: Condition) -> None:
        event = attempt.instances[dependency].reached(condition)
        if event.is_set():
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=self.dependency_timeout_s)
        except asyncio.TimeoutError:
            raise DependencyTimeoutError(waiter, dependency, condition.value, self.dependency_timeout_s) from None

    async def _run_container(self, attempt: RolloutAttempt, name: str) -> None:
        spec = attempt.revision.container(name)
        inst = attempt.instances[name]
        service_id = attempt.service_id
        revision_id = attempt.revision.revision_id

        for dep in attempt.plan.dependencies(name):
            await self._wait_for(attempt, name, dep.name, dep.condition)

        try:
            if attempt.adopt and await self.runtime.is_running(inst.runtime_name):
                inst.mark_started(adopted=True)
            else:
                env = self.config.resolve(spec)
                inst.launch_requested = True
                labels = {"dorc.service": service_id, "dorc.revision": revision_id, "dorc.container": name}
                # A cancelled attempt must not cut a platform start short: the
                # start runs to completion and teardown waits for it.
                inst.start_task = asyncio.create_task(self.runtime.start(inst.runtime_name, spec, env, labels))
                await asyncio.shield(inst.start_task)
                inst.mark_started()
        except Exception as e:
            inst.set_status(HealthStatus.STOPPED)
            if spec.essential:
                raise
            db.log_event(
                "WARN",
                f"Non-essential container {name} failed to start: {_describe(e)}",
                service_id=service_id,
                revision_id=revision_id,
                kind="container",
            )
            return

        db.log_event(
            "INFO",
            f"Container {name} started" + (" (already running)" if inst.adopted else ""),
            service_id=service_id,
            revision_id=revision_id,
            kind="container",
            data={"runtime_name": inst.runtime_name},
        )

        try:
            await self._follow_health(attempt, inst, spec)
        except Exception as e:
            if spec.essential:
                raise
            inst.set_status(HealthStatus.UNHEALTHY)
            db.log_event(
                "WARN",
                f"Lost track of non-essential container {name}: {_describe(e)}",
                service_id=service_id,
                revision_id=revision_id,
                kind="container",
            )

    async def _follow_health(self, attempt: RolloutAttempt, inst: ContainerInstance, spec: ContainerSpec) -> None:
        name = spec.name
        service_id = attempt.service_id
        revision_id = attempt.revision.revision_id
        async with aclosing(self.monitor.watch(inst, spec.health_check)) as statuses:
            async for status in statuses:
                if inst.set_status(status):
                    db.log_event(
                        "WARN" if status in (HealthStatus.UNHEALTHY, HealthStatus.STOPPED) else "INFO",
                        f"Container {name} is {status.value}",
                        service_id=service_id,
                        revision_id=revision_id,
                        kind="health",
                        data={"container": name, "status": status.value},
                    )
                if status in (HealthStatus.UNHEALTHY, HealthStatus.STOPPED):
                    if spec.essential:
                        raise EssentialContainerError(f"Essential container '{name}' is {status.value}")
                    logger.warning("non-essential container %s is %s; continuing", inst.runtime_name, status.value)
                    return

    # ---- helpers ----------------------------------------------------------

    def _transition(self, service: Service, phase: Phase, **changes) -> Service:
        updated = self.store.save(service.evolve(phase=phase, **changes))
        revision_id = updated.target_revision or updated.current_revision
        logger.info("%s: %s -> %s (%s)", updated.service_id, service.phase.value, phase.value, revision_id)
        db.log_event(
            "ERROR" if phase == Phase.FAILED else "INFO",
            f"{service.phase.value} -> {phase.value}",
            service_id=updated.service_id,
            revision_id=revision_id,
            kind="phase",
            data={
                "from": service.phase.value,
                "to": phase.value,
                "current_revision": updated.current_revision,
                "target_revision": updated.target_revision,
                "last_error": updated.last_error,
            },
        )
        return updated

    def _revision_names(self, service_id: str, revision: RevisionDescriptor) -> list[str]:
        return [runtime_name(service_id, revision.revision_id, name) for name in reversed(resolve(revision).order)]

    async def _teardown(self, service_id: str, names: list[str]) -> None:
        for name in names:
            try:
                await self.runtime.stop(name)
            except Exception as e:
                logger.error("failed to stop %s: %s", name, _describe(e))
                db.log_event("ERROR", f"Failed to stop {name}: {_describe(e)}", service_id=service_id, kind="container")

    async def _settle_launches(self, attempt: RolloutAttempt) -> None:
        """Wait for platform starts that outlived the attempt's cancellation."""
        pending = [i.start_task for i in attempt.instances.values() if i.start_task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _abandon(self, service_id: str, attempt: RolloutAttempt, error: ConflictError) -> None:
        await self._settle_launches(attempt)
        await self._teardown(service_id, [i.runtime_name for i in reversed(attempt.launched())])
        self._conflict_event(service_id, attempt.revision.revision_id, error)

    def _conflict_event(self, service_id: str, revision_id: str, error: ConflictError) -> None:
        logger.error("abandoning rollout of %s: %s", service_id, error)
        db.log_event(
            "ERROR",
            f"Rollout abandoned, service changed concurrently: {error}",
            service_id=service_id,
            revision_id=revision_id,
            kind="conflict",
        )
