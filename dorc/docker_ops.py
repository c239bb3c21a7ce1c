from __future__ import annotations

import asyncio
import time
from typing import Protocol

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .errors import ContainerStartError
from .models import ContainerSpec
from .settings import settings


class ContainerRuntime(Protocol):
    """What the controller needs from the container execution platform."""

    async def start(self, name: str, spec: ContainerSpec, env: dict[str, str], labels: dict[str, str]) -> None:
        """Launch a container and return once its process has started."""

    async def stop(self, name: str) -> None:
        """Stop and remove a container. Unknown names are ignored."""

    async def is_running(self, name: str) -> bool: ...

    async def exec(self, name: str, command: tuple[str, ...]) -> int:
        """Run a command inside a running container and return its exit code."""

    def http_base(self, name: str, port: int) -> str: ...


class DockerRuntime:
    """ContainerRuntime backed by the local Docker daemon.

    docker-py is blocking, so every call is pushed to a worker thread.
    Containers are labeled so they can be re-discovered after restarts.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        network: str | None = None,
        start_poll_s: float | None = None,
        start_max_wait_s: float | None = None,
    ):
        self._client = client
        self.network = network or settings.docker_network
        self.start_poll_s = settings.start_poll_s if start_poll_s is None else start_poll_s
        self.start_max_wait_s = settings.start_max_wait_s if start_max_wait_s is None else start_max_wait_s

    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def ensure_network(self) -> None:
        c = self.client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")

    async def start(self, name: str, spec: ContainerSpec, env: dict[str, str], labels: dict[str, str]) -> None:
        await asyncio.to_thread(self._start_sync, name, spec, env, labels)

    def _start_sync(self, name: str, spec: ContainerSpec, env: dict[str, str], labels: dict[str, str]) -> None:
        try:
            self.ensure_network()
            self._remove_sync(name)
            container = self.client().containers.run(
                spec.image_ref,
                command=list(spec.command) if spec.command else None,
                detach=True,
                name=name,
                environment=env,
                network=self.network,
                labels=labels,
                # Restarts are the controller's decision; keep Docker's policy off.
                restart_policy={"Name": "no"},
            )
        except ImageNotFound as e:
            raise ContainerStartError(f"Image '{spec.image_ref}' not found for {name}") from e
        except DockerException as e:
            raise ContainerStartError(f"Docker failed to start {name}: {e}") from e

        deadline = time.monotonic() + self.start_max_wait_s
        while True:
            container.reload()
            if container.status == "running":
                return
            if container.status in {"exited", "dead"}:
                raise ContainerStartError(f"Container {name} exited during startup (status={container.status})")
            if time.monotonic() >= deadline:
                raise ContainerStartError(f"Container {name} did not reach running within {self.start_max_wait_s}s")
            time.sleep(self.start_poll_s)

    async def stop(self, name: str) -> None:
        await asyncio.to_thread(self._remove_sync, name)

    def _remove_sync(self, name: str) -> None:
        try:
            self.client().containers.get(name).remove(force=True)
        except NotFound:
            return

    async def is_running(self, name: str) -> bool:
        return await asyncio.to_thread(self._is_running_sync, name)

    def _is_running_sync(self, name: str) -> bool:
        try:
            cont = self.client().containers.get(name)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False

    async def exec(self, name: str, command: tuple[str, ...]) -> int:
        return await asyncio.to_thread(self._exec_sync, name, command)

    def _exec_sync(self, name: str, command: tuple[str, ...]) -> int:
        try:
            result = self.client().containers.get(name).exec_run(list(command))
        except (NotFound, APIError):
            return -1
        return int(result.exit_code if result.exit_code is not None else -1)

    def http_base(self, name: str, port: int) -> str:
        """HTTP base URL usable from within the same docker network."""
        return f"http://{name}:{int(port)}"
