from __future__ import annotations

import logging

from . import db
from .db import StateStore
from .rollouts import RolloutController

logger = logging.getLogger(__name__)


class Reconciler:
    """Reconciles persisted rollout state with this process after a restart.

    A Service record left in LAUNCHING, STABILIZING or ROLLING_BACK has lost
    its owner (the rollout task died with the previous process). It is not
    reset: the controller rolls it back through the normal ROLLING_BACK path
    and ends in COMMITTED on the previous revision or FAILED.
    """

    def __init__(self, store: StateStore, controller: RolloutController):
        self.store = store
        self.controller = controller

    def recover(self) -> list[str]:
        resumed: list[str] = []
        for service in self.store.list():
            if not service.in_flight or self.controller.in_progress(service.service_id):
                continue
            db.log_event(
                "WARN",
                f"Found orphaned rollout in {service.phase.value}; rolling back",
                service_id=service.service_id,
                revision_id=service.target_revision,
                kind="recovery",
            )
            logger.warning("recovering %s from %s", service.service_id, service.phase.value)
            self.controller.resume(service.service_id)
            resumed.append(service.service_id)
        return resumed
