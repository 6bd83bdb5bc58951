# backend/recon/services/pipeline_coordinator.py
"""
Pipeline Coordinator

Entry point for every pipeline operation:
- Domain intake and relation discovery (Autodiscover) -> DNS stage
- Full recon (Hunter.io contact discovery) -> targets, sources, links -> scraping stage
- Re-scrape / re-queue requests, profile and pretext generation
- Translation of queue 'failed' events into entity state

All discovery writes are conflict-tolerant, so running the same recon twice
creates no duplicates and only enqueues sources that are still pending.
"""

import logging
from typing import Any, Dict, List, Optional

from recon.errors import CollaboratorError, EntityNotFound, ReconError
from recon.events import (
    DomainUpdated,
    EventPublisher,
    ReconComplete,
    ReconUpdate,
    RelatedDomainsFound,
    TargetStatusUpdated,
)
from recon.services.autodiscover_client import AutodiscoverClient
from recon.services.browser_pool import BrowserPool
from recon.services.convergence import StatusConvergenceEngine
from recon.services.dns_worker import DnsWorker
from recon.services.entity_store import EntityStore
from recon.services.hunter_client import DomainSearchResult, HunterClient
from recon.services.llm_client import LLMClient
from recon.services.markdown_client import MarkdownClient
from recon.services.pretext_worker import PretextWorker
from recon.services.profile_worker import ProfileWorker
from recon.services.scraping_worker import ScrapingWorker
from recon.services.stage_queue import (
    JobHandle,
    QueuedJob,
    RetryPolicy,
    Stage,
    StageConfig,
    StageQueue,
)
from recon.services.url_rules import host_of
from recon.status import PretextStatus, SourceStatus, TargetStatus

logger = logging.getLogger(__name__)

DISCOVERY_METHOD = "hunter.io"
UNRESOLVED = (SourceStatus.PENDING, SourceStatus.PROCESSING)


class PipelineCoordinator:
    """
    Flow of a full recon:
    1. Contact discovery for the domain
    2. Upsert Domain / Target / SourceDomain / SourceData / links
    3. Enqueue new or still-pending sources for scraping
    4. Scraping jobs mark sources terminal; convergence enriches targets
    """

    def __init__(
        self,
        settings,
        store: EntityStore,
        queue: StageQueue,
        publisher: EventPublisher,
        convergence: StatusConvergenceEngine,
        browser_pool: BrowserPool,
        hunter: HunterClient,
        autodiscover: AutodiscoverClient,
        scraping_worker: ScrapingWorker,
        dns_worker: DnsWorker,
        profile_worker: ProfileWorker,
        pretext_worker: PretextWorker
    ):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.publisher = publisher
        self.convergence = convergence
        self.browser_pool = browser_pool
        self.hunter = hunter
        self.autodiscover = autodiscover
        self.scraping_worker = scraping_worker
        self.dns_worker = dns_worker
        self.profile_worker = profile_worker
        self.pretext_worker = pretext_worker
        self._started = False

        self._configure_stages()
        self.queue.on("failed", self._on_job_failed)
        self.convergence.on_enriched(self._on_target_enriched)

    def _configure_stages(self) -> None:
        s = self.settings
        self.queue.configure(Stage.DNS, StageConfig(
            concurrency=s.DNS_CONCURRENCY,
            retry=RetryPolicy(s.DNS_MAX_ATTEMPTS, s.DNS_RETRY_BACKOFF_SECONDS),
            job_timeout=s.DNS_JOB_TIMEOUT_SECONDS,
        ))
        self.queue.configure(Stage.SOURCE_SCRAPING, StageConfig(
            concurrency=s.SCRAPE_CONCURRENCY,
            retry=RetryPolicy(s.SCRAPE_MAX_ATTEMPTS, s.SCRAPE_RETRY_BACKOFF_SECONDS),
            job_timeout=s.SCRAPE_JOB_TIMEOUT_SECONDS,
        ))
        self.queue.configure(Stage.PROFILE_GENERATION, StageConfig(
            concurrency=s.PROFILE_CONCURRENCY,
            retry=RetryPolicy(s.LLM_MAX_ATTEMPTS, s.LLM_RETRY_BACKOFF_SECONDS),
            job_timeout=s.LLM_JOB_TIMEOUT_SECONDS,
        ))
        self.queue.configure(Stage.PRETEXT_GENERATION, StageConfig(
            concurrency=s.PRETEXT_CONCURRENCY,
            retry=RetryPolicy(s.LLM_MAX_ATTEMPTS, s.LLM_RETRY_BACKOFF_SECONDS),
            job_timeout=s.LLM_JOB_TIMEOUT_SECONDS,
        ))

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        """Launch the browser and all stage worker pools; a browser failure is fatal"""
        if self._started:
            return

        await self.browser_pool.start()

        self.queue.process(Stage.DNS, None, self.dns_worker.handle)
        self.queue.process(Stage.SOURCE_SCRAPING, None, self.scraping_worker.handle)
        self.queue.process(Stage.PROFILE_GENERATION, None, self.profile_worker.handle)
        self.queue.process(Stage.PRETEXT_GENERATION, None, self.pretext_worker.handle)
        self._started = True
        logger.info("Pipeline coordinator started")

    async def stop(self) -> None:
        await self.queue.stop(self.settings.QUEUE_SHUTDOWN_GRACE_SECONDS)
        await self.browser_pool.close()
        self._started = False
        logger.info("Pipeline coordinator stopped")

    async def recover(self) -> Dict[str, int]:
        """Requeue lost jobs and re-run convergence for pending targets"""
        requeued = await self.queue.requeue_expired()
        converged = await self.convergence.reconcile_pending()
        return {"requeued": requeued, "converged": converged}

    # ========================================================================
    # DOMAINS
    # ========================================================================

    async def add_domain(self, domain: str) -> Dict[str, Any]:
        domain = _normalize_domain(domain)
        await self.store.upsert_domain(domain)
        await self._enqueue_dns(domain, "domain")
        return {
            "success": True,
            "domain": domain,
            "message": "Domain added and queued for DNS lookups"
        }

    async def relate_domain(self, domain: str) -> Dict[str, Any]:
        """Find domains federated with this one; new ones are stored and queued for DNS"""
        domain = _normalize_domain(domain)
        result = await self.autodiscover.get_related_domains(domain)
        related = result.related

        if related:
            await self.store.upsert_domain(domain)
            for name in related:
                await self.store.upsert_domain(name)
                await self._enqueue_dns(name, "domain")

            await self.publisher.publish(RelatedDomainsFound(
                primaryDomain=domain,
                relatedDomains=related
            ))

        logger.info(f"Found {len(related)} domains related to {domain}")
        return {
            "success": True,
            "domain": domain,
            "applicationUri": result.application_uri,
            "relatedDomains": related
        }

    # ========================================================================
    # RECON
    # ========================================================================

    async def run_recon(self, domain: str) -> Dict[str, Any]:
        domain = _normalize_domain(domain)
        if not self.hunter.configured:
            raise CollaboratorError("hunter", "Hunter API key not configured")

        await self.publisher.publish(ReconUpdate(
            message=f"Starting reconnaissance for {domain} using Hunter.io..."
        ))

        try:
            discovery = await self.hunter.search_domain(domain)
            results = await self._store_discovery(domain, discovery)
        except ReconError as e:
            logger.error(f"Recon error for {domain}: {e}")
            await self.publisher.publish(ReconUpdate(
                message=f"Reconnaissance for {domain} failed: {e}"
            ))
            raise

        await self.publisher.publish(ReconComplete(
            domain=domain,
            targetsCount=results["targetsCount"]
        ))
        return results

    async def _store_discovery(self, domain: str, discovery: DomainSearchResult) -> Dict[str, Any]:
        results = {
            "emailFormat": discovery.pattern,
            "targetsCount": len(discovery.contacts),
            "sources": [],
            "queued": 0,
        }

        await self.store.upsert_domain(domain, email_format=discovery.pattern)
        if discovery.pattern:
            await self.publisher.publish(ReconUpdate(
                message=f"Found email format for {domain}: {discovery.pattern}"
            ))

        if discovery.contacts:
            await self.publisher.publish(ReconUpdate(
                message=f"Found {len(discovery.contacts)} potential contacts for {domain}"
            ))

        to_scrape: Dict[int, Dict[str, Any]] = {}

        for contact in discovery.contacts:
            await self.store.upsert_target(
                email=contact.email,
                name=contact.name or None,
                domain_name=domain,
                tenure_start=contact.tenure_start,
                linkedin_url=contact.linkedin_url,
            )

            for source in contact.sources:
                host = source.domain or host_of(source.uri) or None
                if host and await self.store.upsert_source_domain(host):
                    if self.settings.LOOKUP_SOURCE_DOMAIN_DNS:
                        await self._enqueue_dns(host, "source_domain")

                source_id, _, status = await self.store.upsert_source(
                    source.uri, host, DISCOVERY_METHOD, source.metadata()
                )
                linked = await self.store.link_target_source(contact.email, source_id)

                # A new unresolved source means the target is no longer fully enriched
                if linked and status in UNRESOLVED:
                    await self._reopen_target(contact.email, f"New source discovered: {source.uri}")

                if status == SourceStatus.PENDING:
                    to_scrape[source_id] = {"url": source.uri, "domain": host}

                results["sources"].append({"url": source.uri, "domain": host})

            await self.publisher.publish(ReconUpdate(
                message=f"Processed contact: {contact.name or contact.email} ({contact.email})"
            ))

        for source_id, source in to_scrape.items():
            handle = await self._enqueue_scrape(source_id, source["url"], source["domain"])
            if handle.created:
                results["queued"] += 1

        # Targets whose sources were all resolved by earlier runs
        for contact in discovery.contacts:
            await self.convergence.evaluate(contact.email)

        await self.publisher.publish(DomainUpdated(domain=domain))
        logger.info(
            f"Recon stored for {domain}: {results['targetsCount']} targets, "
            f"{len(results['sources'])} sources, {results['queued']} queued"
        )
        return results

    # ========================================================================
    # SOURCES
    # ========================================================================

    async def queue_sources_for_targets(self, emails: Optional[List[str]] = None) -> Dict[str, Any]:
        """Enqueue every non-mined source of the given targets (or of all targets)"""
        sources = await self.store.sources_to_queue(emails)

        if not sources:
            return {
                "success": True,
                "message": f"No sources to scrape for {len(emails)} target(s)" if emails else "No sources to scrape",
                "count": 0
            }

        count = 0
        for source in sources:
            reset = False
            if source.status == SourceStatus.FAILED.value:
                reset = await self.store.reset_source(source.id)
                await self._reopen_targets_of(source.id)

            await self._enqueue_scrape(
                source.id, source.url, source.source_domain_name, rerun_if_active=reset
            )
            count += 1

        return {
            "success": True,
            "message": (
                f"Queued {count} sources for {len(emails)} target(s)" if emails
                else f"Queued {count} sources for scraping"
            ),
            "count": count
        }

    async def rescrape_source(self, source_id: int) -> Dict[str, Any]:
        """
        Explicit re-scrape: back to pending, mapped targets reopened, job enqueued.

        If a scraping job for the source is still running, it is flagged to run
        again once it finishes; the in-flight result is discarded.
        """
        source = await self.store.get_source(source_id)
        if source is None:
            raise EntityNotFound("SourceData", source_id)

        await self.store.reset_source(source_id)
        await self._reopen_targets_of(source_id)
        handle = await self._enqueue_scrape(
            source_id, source.url, source.source_domain_name, rerun_if_active=True
        )

        return {"success": True, "sourceId": source_id, "jobId": handle.id, "rerun": handle.rerun}

    async def _enqueue_scrape(
        self,
        source_id: int,
        url: str,
        source_domain: Optional[str],
        rerun_if_active: bool = False
    ) -> JobHandle:
        return await self.queue.enqueue(
            Stage.SOURCE_SCRAPING,
            {"sourceId": source_id, "sourceUrl": url, "sourceDomain": source_domain},
            dedupe_key=str(source_id),
            rerun_if_active=rerun_if_active
        )

    async def _enqueue_dns(self, domain: str, kind: str) -> JobHandle:
        return await self.queue.enqueue(
            Stage.DNS,
            {"domain": domain, "kind": kind},
            dedupe_key=f"{kind}:{domain}"
        )

    async def _reopen_targets_of(self, source_id: int) -> None:
        for email in await self.store.target_emails_for_source(source_id):
            await self._reopen_target(email, "Reopened for re-scrape")

    async def _reopen_target(self, email: str, message: str) -> None:
        if await self.store.transition_target(email, TargetStatus.PENDING, explicit=True):
            logger.info(f"Target {email} reopened: {message}")
            await self.publisher.publish(TargetStatusUpdated(
                email=email,
                status=TargetStatus.PENDING.value,
                message=message
            ))

    # ========================================================================
    # PROFILES & PRETEXTS
    # ========================================================================

    async def request_profile(self, email: str) -> JobHandle:
        if await self.store.get_target(email) is None:
            raise EntityNotFound("Target", email)
        return await self.queue.enqueue(
            Stage.PROFILE_GENERATION, {"targetEmail": email}, dedupe_key=email
        )

    async def request_pretext(self, email: str, prompt_name: str) -> JobHandle:
        if await self.store.get_target(email) is None:
            raise EntityNotFound("Target", email)
        prompt = await self.store.get_prompt_by_name(prompt_name)
        if prompt is None:
            raise EntityNotFound("Prompt", prompt_name)

        return await self.queue.enqueue(
            Stage.PRETEXT_GENERATION,
            {"targetEmail": email, "promptId": prompt.id},
            dedupe_key=f"{email}:{prompt.id}"
        )

    async def review_pretext(self, pretext_id: int, approved: bool) -> str:
        status = PretextStatus.APPROVED if approved else PretextStatus.REJECTED
        await self.store.transition_pretext(pretext_id, status)
        return status.value

    # ========================================================================
    # QUEUE MAINTENANCE
    # ========================================================================

    async def clear_queue(self, stage) -> int:
        return await self.queue.clear(Stage(stage))

    async def queue_stats(self, stage) -> Dict[str, int]:
        return await self.queue.stats(Stage(stage))

    # ========================================================================
    # EVENT TRANSLATION
    # ========================================================================

    async def _on_job_failed(self, job: QueuedJob, error: BaseException) -> None:
        """Terminal job failures the handler itself could not record"""
        reason = str(error) or error.__class__.__name__

        if job.stage == Stage.SOURCE_SCRAPING.value:
            source_id = job.payload.get("sourceId")
            # No-op when the worker already recorded the failure
            if await self.store.mark_source_failed(
                source_id, f"Error: {reason}", only_from=SourceStatus.PROCESSING
            ):
                logger.error(f"Scraping job {job.id} for source {source_id} lost: {reason}")
                await self.scraping_worker.finish(
                    source_id,
                    SourceStatus.FAILED,
                    f"Failed to scrape source: {job.payload.get('sourceUrl')} - {reason}"
                )
                return

            source = await self.store.get_source(source_id)
            if source is not None and source.status == SourceStatus.PENDING.value:
                # Never started, or reset for a re-scrape after this job finished
                logger.warning(f"Scraping job {job.id} failed before source {source_id} started; re-queueing")
                await self._enqueue_scrape(source_id, source.url, source.source_domain_name)

        elif job.stage == Stage.DNS.value:
            await self.publisher.publish(ReconUpdate(
                message=f"DNS lookup failed for {job.payload.get('domain')}: {reason}"
            ))

        elif job.stage == Stage.PROFILE_GENERATION.value:
            await self.profile_worker.mark_failed(job.payload.get("targetEmail"), error)

        elif job.stage == Stage.PRETEXT_GENERATION.value:
            await self.publisher.publish(ReconUpdate(
                message=f"Pretext generation failed for {job.payload.get('targetEmail')}: {reason}"
            ))

    async def _on_target_enriched(self, email: str) -> None:
        if self.settings.AUTO_GENERATE_PROFILES:
            await self.request_profile(email)


def _normalize_domain(domain: str) -> str:
    domain = (domain or "").strip().lower()
    if not domain:
        raise ValueError("Domain is required")
    return domain


def create_pipeline_coordinator(
    settings,
    session_factory,
    publisher: Optional[EventPublisher] = None,
    context_factory=None,
    resolver=None,
    http_transport=None
) -> PipelineCoordinator:
    """Build the coordinator and every component it drives from settings"""
    publisher = publisher or EventPublisher(settings.EVENT_DELIVERY_TIMEOUT_SECONDS)
    store = EntityStore(session_factory)
    queue = StageQueue(
        session_factory,
        poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
        lease_seconds=settings.QUEUE_LEASE_SECONDS,
    )
    convergence = StatusConvergenceEngine(store, publisher)
    browser_pool = BrowserPool.from_settings(settings, context_factory=context_factory)

    converter = MarkdownClient(
        settings.MARKITDOWN_URL, settings.MARKITDOWN_TIMEOUT_SECONDS, transport=http_transport
    )
    llm = LLMClient(
        settings.LLM_API_URL,
        settings.LLM_MODEL,
        api_key=settings.LLM_API_KEY,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        transport=http_transport,
    )

    return PipelineCoordinator(
        settings=settings,
        store=store,
        queue=queue,
        publisher=publisher,
        convergence=convergence,
        browser_pool=browser_pool,
        hunter=HunterClient(
            settings.HUNTER_API_KEY,
            settings.HUNTER_API_URL,
            settings.HUNTER_TIMEOUT_SECONDS,
            transport=http_transport,
        ),
        autodiscover=AutodiscoverClient(
            settings.AUTODISCOVER_URL,
            settings.AUTODISCOVER_TIMEOUT_SECONDS,
            transport=http_transport,
        ),
        scraping_worker=ScrapingWorker(
            store,
            browser_pool,
            converter,
            convergence,
            publisher,
            navigation_timeout=settings.SCRAPE_NAVIGATION_TIMEOUT_SECONDS,
            scroll_settle=settings.SCRAPE_SCROLL_SETTLE_SECONDS,
            settle_jitter=settings.SCRAPE_SETTLE_JITTER_SECONDS,
        ),
        dns_worker=DnsWorker(
            store, publisher, resolver=resolver, lookup_timeout=settings.DNS_LOOKUP_TIMEOUT_SECONDS
        ),
        profile_worker=ProfileWorker(
            store, llm, publisher, source_char_limit=settings.PROFILE_SOURCE_CHAR_LIMIT
        ),
        pretext_worker=PretextWorker(store, llm, publisher),
    )
