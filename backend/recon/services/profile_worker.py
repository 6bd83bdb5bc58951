# backend/recon/services/profile_worker.py
"""
Profile Worker - summarises a target's mined sources into a profile
"""

import logging
from typing import Any, Dict

from recon.errors import EntityNotFound, ReconError
from recon.events import EventPublisher, ReconUpdate, TargetStatusUpdated
from recon.services.entity_store import EntityStore
from recon.services.llm_client import LLMClient
from recon.services.stage_queue import QueuedJob
from recon.status import SourceStatus, TargetStatus

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an OSINT analyst. From the collected web pages, write a concise "
    "profile of the person: role, responsibilities, interests, public activity "
    "and anything useful for crafting a relevant message to them. Only use facts "
    "present in the material."
)


class ProfileWorker:

    def __init__(
        self,
        store: EntityStore,
        llm: LLMClient,
        publisher: EventPublisher,
        source_char_limit: int = 4000
    ):
        self.store = store
        self.llm = llm
        self.publisher = publisher
        self.source_char_limit = source_char_limit

    async def handle(self, job: QueuedJob) -> Dict[str, Any]:
        email = job.payload["targetEmail"]
        try:
            return await self.generate(email)
        except Exception as e:
            if job.is_final_attempt:
                await self.mark_failed(email, e)
            raise

    async def generate(self, email: str) -> Dict[str, Any]:
        target = await self.store.get_target(email)
        if target is None:
            raise EntityNotFound("Target", email)

        sources = await self.store.list_sources_for_target(email, status=SourceStatus.MINED)
        material = self.build_material(sources)
        if not material:
            raise ReconError(f"No mined source content for {email}")

        prompt = (
            f"Person: {target.name or email} <{email}>\n"
            f"Organisation domain: {target.domain_name}\n\n"
            f"Collected material:\n\n{material}"
        )
        profile = await self.llm.complete(SYSTEM_PROMPT, prompt)

        await self.store.set_target_profile(email, profile)
        await self.publisher.publish(ReconUpdate(message=f"Generated profile for {email}"))

        logger.info(f"Generated profile for {email} from {len(sources)} sources")
        return {"targetEmail": email, "sources": len(sources)}

    def build_material(self, sources) -> str:
        sections = []
        for source in sources:
            content = (source.data or {}).get("content")
            if not content:
                continue
            title = (source.data or {}).get("title") or source.url
            sections.append(f"## {title}\n{source.url}\n\n{content[:self.source_char_limit]}")
        return "\n\n".join(sections)

    async def mark_failed(self, email: str, error: Exception) -> None:
        try:
            moved = await self.store.transition_target(email, TargetStatus.FAILED)
        except ReconError as e:
            logger.error(f"Could not mark {email} failed: {e}")
            return

        logger.error(f"Profile generation failed for {email}: {error}")
        if moved:
            await self.publisher.publish(TargetStatusUpdated(
                email=email,
                status=TargetStatus.FAILED.value,
                message=f"Profile generation failed: {error}"
            ))
