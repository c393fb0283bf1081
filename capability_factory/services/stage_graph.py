"""StageGraph: guarded, conditional stage transitions on capability records.

The guard and the write use the same read: the write is conditioned on the
revision that was read, and a lost race re-reads and re-checks the guard.
A racing winner that already advanced the stage makes the loser fail the
guard, so two callers can never both apply the same transition.
"""

from typing import Any

import structlog

from capability_factory.core.exceptions import ConcurrentUpdateError, NotFoundError
from capability_factory.db.store import FactoryStore
from capability_factory.domain.stages import CapabilityStatus, Stage, check_stage, validate_transition
from capability_factory.schemas.factory import Capability, HistoryEvent

logger = structlog.get_logger(__name__)

MAX_WRITE_ATTEMPTS = 3


class StageGraph:
    def __init__(self, store: FactoryStore):
        self.store = store

    async def load(self, capability_id: str) -> Capability:
        capability = await self.store.get_capability(capability_id)
        if capability is None:
            raise NotFoundError(f"Capability not found: {capability_id}")
        return capability

    async def guard(self, capability_id: str, required: Stage) -> Capability:
        """Load the capability and fail with StageMismatchError unless it is at `required`."""
        capability = await self.load(capability_id)
        check_stage(capability, required)
        return capability

    async def advance(
        self,
        capability_id: str,
        required: Stage,
        target: Stage | None,
        event_type: str,
        actor: str,
        detail: dict[str, Any] | None = None,
        status: CapabilityStatus | None = None,
    ) -> Capability:
        """Move `required -> target` and append a history event in one conditional write.

        With target=None the stage is left alone and only the event is
        recorded, still under the guard.
        """
        if target is not None:
            validate_transition(required, target)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            capability = await self.guard(capability_id, required)
            expected_revision = capability.revision
            if target is not None:
                capability.stage = target
            if status is not None:
                capability.status = status
            capability.history.append(HistoryEvent(type=event_type, actor=actor, detail=dict(detail or {})))
            try:
                saved = await self.store.save_capability(capability, expected_revision)
            except ConcurrentUpdateError:
                logger.warning(
                    "stage.transition.conflict",
                    capability_id=capability_id,
                    required=str(required),
                    attempt=attempt,
                )
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                continue

            if target is not None:
                logger.info(
                    "stage.transition",
                    capability_id=capability_id,
                    from_stage=str(required),
                    to_stage=str(target),
                    event_type=event_type,
                    actor=actor,
                )
            return saved

        raise AssertionError("unreachable")
