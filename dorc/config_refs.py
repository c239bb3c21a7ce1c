from __future__ import annotations

import os
from collections.abc import Mapping

from .errors import ConfigResolutionError
from .models import ContainerSpec


class ConfigResolver:
    """Resolves a container's ``config_refs`` to literal environment values.

    ``source`` maps configuration source identifiers to values; by default it
    is the orchestrator's own environment, which is where a parameter store
    or secret manager sidecar would inject them. Values are looked up on
    every launch and never stored.
    """

    def __init__(self, source: Mapping[str, str] | None = None):
        self._source = source

    def resolve(self, spec: ContainerSpec) -> dict[str, str]:
        source = os.environ if self._source is None else self._source
        env: dict[str, str] = {}
        missing: list[str] = []
        for var, ref in spec.config_refs.items():
            value = source.get(ref)
            if value is None:
                missing.append(ref)
                continue
            env[var] = value
        if missing:
            raise ConfigResolutionError(
                f"Container '{spec.name}' references unresolved config sources: {', '.join(sorted(missing))}"
            )
        return env
