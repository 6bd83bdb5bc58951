# backend/recon/services/entity_store.py
"""
Entity Store - keyed record storage for the recon pipeline

Every public method runs in its own short session and commits before
returning; nothing here spans a multi-statement transaction that callers can
observe. Concurrent writers stay correct because:
- inserts are INSERT ... ON CONFLICT (idempotent upserts)
- status writes are UPDATE ... WHERE status IN (<allowed predecessors>)
"""

from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recon.database import dialect_insert
from recon.errors import EntityNotFound, StoreWriteFailure
from recon.models import (
    Domain,
    SourceDomain,
    Target,
    SourceData,
    TargetSourceMap,
    Prompt,
    Pretext,
)
from recon.status import (
    SourceStatus,
    TargetStatus,
    PretextStatus,
    ensure_transition,
    sources_for,
)
from recon.utils.time import utc_now

logger = logging.getLogger(__name__)


class EntityStore:
    """Repository over Domain/SourceDomain/Target/SourceData/links/prompts/pretexts"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ========================================================================
    # SESSION HELPERS
    # ========================================================================

    @asynccontextmanager
    async def _session(self):
        """Session with one committed transaction; storage outages become StoreWriteFailure"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Entity store unavailable: {e}")
            raise StoreWriteFailure(str(e)) from e

    async def _transition(
        self,
        session: AsyncSession,
        model,
        key_column,
        key,
        requested,
        explicit: bool = False,
        strict: bool = False,
        values: Optional[Dict[str, Any]] = None,
        only_from=None,
    ) -> bool:
        """
        Conditional status write.

        Only rows whose current status is an allowed predecessor of
        ``requested`` are updated, so racing writers cannot regress a status.
        ``only_from`` narrows the predecessors to that one status.
        Returns True when this call performed the transition.
        """
        allowed = sources_for(requested, explicit=explicit)
        if only_from is not None:
            allowed = [status for status in allowed if status == only_from.value]

        stmt = (
            update(model)
            .where(and_(
                key_column == key,
                model.status.in_(allowed)
            ))
            .values(status=requested.value, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            return True

        current = (await session.execute(
            select(model.status).where(key_column == key)
        )).scalar_one_or_none()

        if current is None:
            raise EntityNotFound(model.__name__, key)
        if strict and current != requested.value:
            # Out-of-table requests raise; a legal one lost a race and reports False
            ensure_transition(current, requested, explicit=explicit)
        return False

    # ========================================================================
    # DOMAINS
    # ========================================================================

    async def upsert_domain(self, name: str, email_format: Optional[str] = None) -> bool:
        """Insert a domain if missing; returns True if it was created"""
        async with self._session() as session:
            stmt = dialect_insert(session, Domain).values(name=name)
            result = await session.execute(stmt.on_conflict_do_nothing(index_elements=[Domain.name]))
            created = result.rowcount == 1

            if email_format:
                await session.execute(
                    update(Domain).where(Domain.name == name).values(email_format=email_format)
                )
            return created

    async def upsert_source_domain(self, name: str) -> bool:
        async with self._session() as session:
            stmt = dialect_insert(session, SourceDomain).values(name=name)
            result = await session.execute(stmt.on_conflict_do_nothing(index_elements=[SourceDomain.name]))
            return result.rowcount == 1

    async def update_dns_records(
        self,
        name: str,
        mx: Optional[str],
        spf: Optional[str],
        dmarc: Optional[str],
        source_domain: bool = False
    ) -> None:
        model = SourceDomain if source_domain else Domain
        async with self._session() as session:
            result = await session.execute(
                update(model).where(model.name == name).values(mx=mx, spf=spf, dmarc=dmarc)
            )
            if result.rowcount == 0:
                raise EntityNotFound(model.__name__, name)

    async def get_domain(self, name: str) -> Optional[Domain]:
        async with self._session() as session:
            return await session.get(Domain, name)

    async def list_domains(self) -> List[Domain]:
        async with self._session() as session:
            result = await session.execute(select(Domain).order_by(Domain.name))
            return list(result.scalars().all())

    # ========================================================================
    # TARGETS
    # ========================================================================

    async def upsert_target(
        self,
        email: str,
        name: Optional[str],
        domain_name: str,
        tenure_start: Optional[date] = None,
        linkedin_url: Optional[str] = None
    ) -> bool:
        """
        Insert or refresh a target; never touches its status.

        tenure_start only ever moves earlier, so repeated or concurrent
        discovery runs converge on the earliest known date.
        """
        async with self._session() as session:
            stmt = dialect_insert(session, Target).values(
                email=email,
                name=name,
                domain_name=domain_name,
                tenure_start=tenure_start,
                linkedin_url=linkedin_url,
                status=TargetStatus.PENDING.value,
            )
            result = await session.execute(stmt.on_conflict_do_nothing(index_elements=[Target.email]))
            if result.rowcount == 1:
                return True

            refresh = {"name": name, "domain_name": domain_name}
            if linkedin_url:
                refresh["linkedin_url"] = linkedin_url
            await session.execute(update(Target).where(Target.email == email).values(**refresh))

            if tenure_start is not None:
                await session.execute(
                    update(Target)
                    .where(and_(
                        Target.email == email,
                        (Target.tenure_start.is_(None)) | (Target.tenure_start > tenure_start)
                    ))
                    .values(tenure_start=tenure_start)
                )
            return False

    async def get_target(self, email: str) -> Optional[Target]:
        async with self._session() as session:
            return await session.get(Target, email)

    async def list_targets(self, domain_name: Optional[str] = None) -> List[Target]:
        async with self._session() as session:
            stmt = select(Target).order_by(Target.email)
            if domain_name:
                stmt = stmt.where(Target.domain_name == domain_name)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def pending_target_emails(self) -> List[str]:
        async with self._session() as session:
            result = await session.execute(
                select(Target.email).where(Target.status == TargetStatus.PENDING.value)
            )
            return list(result.scalars().all())

    async def transition_target(
        self,
        email: str,
        status: TargetStatus,
        explicit: bool = False,
        strict: bool = False
    ) -> bool:
        async with self._session() as session:
            return await self._transition(
                session, Target, Target.email, email, status,
                explicit=explicit, strict=strict
            )

    async def set_target_profile(self, email: str, profile: str) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(Target).where(Target.email == email).values(profile=profile)
            )
            if result.rowcount == 0:
                raise EntityNotFound("Target", email)

    async def count_unresolved_sources(self, email: str) -> Tuple[int, int]:
        """(mapped source count, mapped sources still pending or processing)"""
        unresolved = (SourceStatus.PENDING.value, SourceStatus.PROCESSING.value)
        async with self._session() as session:
            result = await session.execute(
                select(
                    func.count(SourceData.id),
                    func.count(SourceData.id).filter(SourceData.status.in_(unresolved))
                )
                .select_from(TargetSourceMap)
                .join(SourceData, SourceData.id == TargetSourceMap.source_id)
                .where(TargetSourceMap.target_email == email)
            )
            total, pending = result.one()
            return int(total or 0), int(pending or 0)

    # ========================================================================
    # SOURCES
    # ========================================================================

    async def upsert_source(
        self,
        url: str,
        source_domain_name: Optional[str],
        discovery_method: str,
        data: Optional[Dict] = None
    ) -> Tuple[int, bool, SourceStatus]:
        """
        Resolve a URL to its SourceData row, creating it if needed.

        Returns (source_id, created, current_status).
        """
        async with self._session() as session:
            stmt = dialect_insert(session, SourceData).values(
                url=url,
                source_domain_name=source_domain_name,
                discovery_method=discovery_method,
                data=data or {},
                status=SourceStatus.PENDING.value,
            )
            result = await session.execute(stmt.on_conflict_do_nothing(index_elements=[SourceData.url]))
            created = result.rowcount == 1

            row = (await session.execute(
                select(SourceData.id, SourceData.status).where(SourceData.url == url)
            )).one()
            return row.id, created, SourceStatus(row.status)

    async def get_source(self, source_id: int) -> Optional[SourceData]:
        async with self._session() as session:
            return await session.get(SourceData, source_id)

    async def list_sources_for_target(
        self,
        email: str,
        status: Optional[SourceStatus] = None
    ) -> List[SourceData]:
        async with self._session() as session:
            stmt = (
                select(SourceData)
                .join(TargetSourceMap, TargetSourceMap.source_id == SourceData.id)
                .where(TargetSourceMap.target_email == email)
                .order_by(SourceData.id)
            )
            if status is not None:
                stmt = stmt.where(SourceData.status == status.value)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def target_emails_for_source(self, source_id: int) -> List[str]:
        async with self._session() as session:
            result = await session.execute(
                select(TargetSourceMap.target_email)
                .where(TargetSourceMap.source_id == source_id)
                .order_by(TargetSourceMap.id)
            )
            return list(result.scalars().all())

    async def profile_urls_for_source(self, source_id: int) -> List[str]:
        """Direct profile URLs already known for the contacts mapped to a source"""
        async with self._session() as session:
            result = await session.execute(
                select(Target.linkedin_url)
                .join(TargetSourceMap, TargetSourceMap.target_email == Target.email)
                .where(and_(
                    TargetSourceMap.source_id == source_id,
                    Target.linkedin_url.isnot(None)
                ))
                .order_by(TargetSourceMap.id)
            )
            return [url for url in result.scalars().all() if url]

    async def sources_to_queue(self, emails: Optional[List[str]] = None) -> List[SourceData]:
        """Sources not yet mined, for the given targets or for everyone"""
        async with self._session() as session:
            stmt = select(SourceData).where(SourceData.status != SourceStatus.MINED.value)
            if emails:
                stmt = (
                    stmt.join(TargetSourceMap, TargetSourceMap.source_id == SourceData.id)
                    .where(TargetSourceMap.target_email.in_(emails))
                    .distinct()
                )
            result = await session.execute(stmt.order_by(SourceData.id))
            return list(result.scalars().all())

    async def start_processing(self, source_id: int) -> bool:
        """pending -> processing; False if another delivery already moved it"""
        async with self._session() as session:
            return await self._transition(
                session, SourceData, SourceData.id, source_id, SourceStatus.PROCESSING,
                values={"status_message": "Source scraping in progress", "last_checked": utc_now()}
            )

    async def mark_source_mined(self, source_id: int, data: Dict, message: str) -> bool:
        async with self._session() as session:
            return await self._transition(
                session, SourceData, SourceData.id, source_id, SourceStatus.MINED,
                values={"data": data, "status_message": message, "last_checked": utc_now()}
            )

    async def mark_source_failed(
        self,
        source_id: int,
        message: str,
        only_from: Optional[SourceStatus] = None
    ) -> bool:
        """Move an unresolved source to failed; terminal sources are left alone"""
        async with self._session() as session:
            return await self._transition(
                session, SourceData, SourceData.id, source_id, SourceStatus.FAILED,
                values={"status_message": message, "last_checked": utc_now()},
                only_from=only_from
            )

    async def set_source_message(self, source_id: int, message: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(SourceData)
                .where(SourceData.id == source_id)
                .values(status_message=message, last_checked=utc_now())
            )

    async def reset_source(self, source_id: int) -> bool:
        """Explicit re-scrape: any non-pending source goes back to pending"""
        async with self._session() as session:
            return await self._transition(
                session, SourceData, SourceData.id, source_id, SourceStatus.PENDING,
                explicit=True,
                values={"status_message": "Queued for re-scrape"}
            )

    # ========================================================================
    # LINKS
    # ========================================================================

    async def link_target_source(self, email: str, source_id: int) -> bool:
        """Map a target to a source; duplicate pairs are ignored"""
        try:
            async with self._session() as session:
                stmt = dialect_insert(session, TargetSourceMap).values(
                    target_email=email,
                    source_id=source_id,
                )
                result = await session.execute(
                    stmt.on_conflict_do_nothing(
                        index_elements=[TargetSourceMap.target_email, TargetSourceMap.source_id]
                    )
                )
                return result.rowcount == 1
        except IntegrityError as e:
            raise EntityNotFound("TargetSourceMap reference", (email, source_id)) from e

    async def count_links(self) -> int:
        async with self._session() as session:
            result = await session.execute(select(func.count(TargetSourceMap.id)))
            return int(result.scalar_one())

    # ========================================================================
    # PROMPTS & PRETEXTS
    # ========================================================================

    async def upsert_prompt(
        self,
        name: str,
        template: str,
        dos: Optional[List[str]] = None,
        donts: Optional[List[str]] = None
    ) -> int:
        async with self._session() as session:
            stmt = dialect_insert(session, Prompt).values(
                name=name, template=template, dos=dos or [], donts=donts or []
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Prompt.name],
                set_={
                    "template": stmt.excluded.template,
                    "dos": stmt.excluded.dos,
                    "donts": stmt.excluded.donts,
                }
            )
            await session.execute(stmt)
            result = await session.execute(select(Prompt.id).where(Prompt.name == name))
            return result.scalar_one()

    async def get_prompt(self, prompt_id: int) -> Optional[Prompt]:
        async with self._session() as session:
            return await session.get(Prompt, prompt_id)

    async def get_prompt_by_name(self, name: str) -> Optional[Prompt]:
        async with self._session() as session:
            result = await session.execute(select(Prompt).where(Prompt.name == name))
            return result.scalar_one_or_none()

    async def create_pretext(
        self,
        target_email: str,
        prompt_id: Optional[int],
        prompt_text: str,
        subject: str,
        body: str,
        link: Optional[str] = None
    ) -> int:
        async with self._session() as session:
            pretext = Pretext(
                target_email=target_email,
                prompt_id=prompt_id,
                prompt_text=prompt_text,
                subject=subject,
                body=body,
                link=link,
                status=PretextStatus.DRAFT.value,
            )
            session.add(pretext)
            await session.flush()
            return pretext.id

    async def list_pretexts(self, target_email: str) -> List[Pretext]:
        async with self._session() as session:
            result = await session.execute(
                select(Pretext).where(Pretext.target_email == target_email).order_by(Pretext.id)
            )
            return list(result.scalars().all())

    async def transition_pretext(self, pretext_id: int, status: PretextStatus) -> bool:
        async with self._session() as session:
            return await self._transition(
                session, Pretext, Pretext.id, pretext_id, status, strict=True
            )
