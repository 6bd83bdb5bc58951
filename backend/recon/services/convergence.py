# backend/recon/services/convergence.py
"""
Status Convergence Engine

Derives a target's status from the statuses of its mapped sources:
a target becomes 'enriched' once every mapped source is terminal
(mined or failed). Triggered after every source status write and by the
periodic recovery sweep.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from recon.errors import ReconError
from recon.events import EventPublisher, TargetStatusUpdated
from recon.services.entity_store import EntityStore
from recon.status import TargetStatus

logger = logging.getLogger(__name__)

EnrichedListener = Callable[[str], Awaitable[None]]


@dataclass
class ConvergenceResult:
    """
    action is one of:
        "transitioned" - this evaluation moved the target to enriched
        "noop"         - nothing to do (unresolved sources, no sources, already moved)
        "error"        - the store failed; the next trigger will retry
    """
    email: str
    action: str
    total_sources: int = 0
    unresolved_sources: int = 0
    error: Optional[str] = None

    @property
    def transitioned(self) -> bool:
        return self.action == "transitioned"


class StatusConvergenceEngine:

    def __init__(self, store: EntityStore, publisher: EventPublisher):
        self.store = store
        self.publisher = publisher
        self._enriched_listeners: List[EnrichedListener] = []

    def on_enriched(self, listener: EnrichedListener) -> None:
        self._enriched_listeners.append(listener)

    async def evaluate(self, target_email: str) -> ConvergenceResult:
        """
        Move the target to enriched if all of its sources are resolved.

        The write is conditioned on the target still being pending, so when
        several jobs finish at once only one evaluation reports a transition
        and only that one publishes targetStatusUpdated.
        """
        try:
            total, unresolved = await self.store.count_unresolved_sources(target_email)

            # A target with no sources has nothing to converge on
            if total == 0 or unresolved > 0:
                return ConvergenceResult(target_email, "noop", total, unresolved)

            moved = await self.store.transition_target(target_email, TargetStatus.ENRICHED)
        except ReconError as e:
            logger.error(f"Convergence failed for {target_email}: {e}")
            return ConvergenceResult(target_email, "error", error=str(e))

        if not moved:
            return ConvergenceResult(target_email, "noop", total, unresolved)

        logger.info(f"Target {target_email} enriched ({total} sources resolved)")
        await self.publisher.publish(TargetStatusUpdated(
            email=target_email,
            status=TargetStatus.ENRICHED.value,
            message="All sources processed"
        ))

        for listener in list(self._enriched_listeners):
            try:
                await listener(target_email)
            except Exception as e:
                logger.error(f"Enriched listener failed for {target_email}: {e}")

        return ConvergenceResult(target_email, "transitioned", total, 0)

    async def evaluate_for_source(self, source_id: int) -> List[ConvergenceResult]:
        """Evaluate every target mapped to a source"""
        try:
            emails = await self.store.target_emails_for_source(source_id)
        except ReconError as e:
            logger.error(f"Could not load targets for source {source_id}: {e}")
            return []

        return [await self.evaluate(email) for email in emails]

    async def reconcile_pending(self) -> int:
        """Re-evaluate every pending target; returns how many converged"""
        try:
            emails = await self.store.pending_target_emails()
        except ReconError as e:
            logger.error(f"Reconcile sweep could not list pending targets: {e}")
            return 0

        converged = 0
        for email in emails:
            result = await self.evaluate(email)
            if result.transitioned:
                converged += 1

        if converged:
            logger.info(f"Reconcile sweep converged {converged} targets")
        return converged
