from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass

import httpx

from .docker_ops import ContainerRuntime
from .models import HealthCheck, HealthStatus
from .runtime import ContainerInstance
from .settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None


async def check_http(client: httpx.AsyncClient, url: str, timeout_s: float = 2.0) -> ProbeResult:
    """Call a container health endpoint. Any 2xx answer counts as healthy."""
    start = time.monotonic()
    try:
        resp = await client.get(url, timeout=timeout_s, follow_redirects=False)
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return ProbeResult(False, f"HTTP {resp.status_code}", latency_ms)
        return ProbeResult(True, "Healthy", latency_ms)
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return ProbeResult(False, "No response", latency_ms)
    except httpx.HTTPError as e:
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return ProbeResult(False, f"Error: {type(e).__name__}: {e}", latency_ms)


class HealthMonitor:
    """Turns a container's health check into a stream of status transitions.

    Every ``watch`` is its own polling loop; cancelling the task that iterates
    it cancels the in-flight probe as well. The stream only yields changes:

      STARTING   once the container's process has started (checked containers)
      HEALTHY    after ``retries`` consecutive successes past ``start_period``
      UNHEALTHY  after ``retries`` consecutive failures (ends the stream)
      STOPPED    when the container is no longer running (ends the stream)

    A probe that raises, or a platform error while asking whether the
    container runs, is a failed probe like any other.

    A container without a health check yields HEALTHY as soon as it has
    started. After that it is only checked for liveness every
    ``liveness_interval_s``: STOPPED once its process is gone, UNHEALTHY
    after ``liveness_retries`` consecutive platform errors.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        client: httpx.AsyncClient | None = None,
        liveness_interval_s: float | None = None,
        liveness_retries: int | None = None,
    ):
        self.runtime = runtime
        self._client = client
        self.liveness_interval_s = (
            settings.liveness_interval_s if liveness_interval_s is None else liveness_interval_s
        )
        self.liveness_retries = settings.liveness_retries if liveness_retries is None else liveness_retries

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def probe(self, instance: ContainerInstance, check: HealthCheck) -> ProbeResult:
        start = time.monotonic()
        try:
            if check.command is not None:
                code = await asyncio.wait_for(
                    self.runtime.exec(instance.runtime_name, check.command), timeout=check.timeout_s
                )
                latency_ms = round((time.monotonic() - start) * 1000.0, 2)
                if code == 0:
                    return ProbeResult(True, "Healthy", latency_ms)
                return ProbeResult(False, f"Exit code {code}", latency_ms)

            url = f"{self.runtime.http_base(instance.runtime_name, check.port)}{check.endpoint}"
            return await asyncio.wait_for(
                check_http(self._http(), url, timeout_s=check.timeout_s), timeout=check.timeout_s
            )
        except asyncio.TimeoutError:
            return ProbeResult(False, f"Timed out after {check.timeout_s:g}s", round(check.timeout_s * 1000.0, 2))
        except Exception as e:
            latency_ms = round((time.monotonic() - start) * 1000.0, 2)
            return ProbeResult(False, f"Error: {type(e).__name__}: {e}", latency_ms)

    async def watch(self, instance: ContainerInstance, check: HealthCheck | None) -> AsyncIterator[HealthStatus]:
        await instance.started.wait()
        if check is None:
            yield HealthStatus.HEALTHY
            async with aclosing(self._liveness(instance)) as liveness:
                async for status in liveness:
                    yield status
            return

        yield HealthStatus.STARTING
        if not instance.adopted and instance.started_at is not None:
            grace = check.start_period_s - (time.monotonic() - instance.started_at)
            if grace > 0:
                await asyncio.sleep(grace)

        healthy = False
        successes = 0
        failures = 0
        while True:
            try:
                running = await self.runtime.is_running(instance.runtime_name)
            except Exception as e:
                result = ProbeResult(False, f"Error: {type(e).__name__}: {e}")
            else:
                if not running:
                    yield HealthStatus.STOPPED
                    return
                result = await self.probe(instance, check)
            logger.debug(
                "probe %s ok=%s msg=%s latency_ms=%s",
                instance.runtime_name,
                result.ok,
                result.message,
                result.latency_ms,
            )
            if result.ok:
                successes += 1
                failures = 0
                if not healthy and successes >= check.retries:
                    healthy = True
                    yield HealthStatus.HEALTHY
            else:
                failures += 1
                successes = 0
                if failures >= check.retries:
                    yield HealthStatus.UNHEALTHY
                    return

            await asyncio.sleep(check.interval_s)

    async def _liveness(self, instance: ContainerInstance) -> AsyncIterator[HealthStatus]:
        errors = 0
        while True:
            await asyncio.sleep(self.liveness_interval_s)
            try:
                running = await self.runtime.is_running(instance.runtime_name)
            except Exception as e:
                errors += 1
                logger.warning("liveness check of %s failed: %s: %s", instance.runtime_name, type(e).__name__, e)
                if errors >= self.liveness_retries:
                    yield HealthStatus.UNHEALTHY
                    return
                continue
            errors = 0
            if not running:
                yield HealthStatus.STOPPED
                return
