# tests/test_pipeline_coordinator.py
"""
Pipeline Coordinator, end to end against SQLite, a fake browser and
mocked HTTP collaborators (Hunter.io, MarkItDown, Autodiscover, LLM)

Coverage:
- Recon is idempotent and computes tenure_start
- Scenario: two contacts sharing a source, one source times out;
  each target is enriched exactly once
- Lost jobs (job timeout) are translated into failed sources
- Related domains, re-scrape / re-queue reopen targets
- Re-scrape while the source is being scraped runs the job again
- Profile and pretext generation, pretext review
"""

import json
from datetime import date

import dns.resolver
import httpx
import pytest
import pytest_asyncio
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from recon.errors import (
    BrowserUnavailable,
    CollaboratorError,
    EntityNotFound,
    InvalidStatusTransition,
)
from recon.services.pipeline_coordinator import create_pipeline_coordinator
from recon.services.stage_queue import QueuedJob, Stage
from recon.status import SourceStatus, TargetStatus

BLOG_URL = "https://blog.example.com/team"
SLOW_URL = "https://slow.example.org/about"

HUNTER_BODY = {
    "data": {
        "domain": "acme.com",
        "pattern": "{first}",
        "emails": [
            {
                "value": "Jane@acme.com",
                "first_name": "Jane",
                "last_name": "Doe",
                "linkedin": None,
                "sources": [
                    {"domain": "blog.example.com", "uri": BLOG_URL, "extracted_on": "2021-04-02",
                     "last_seen_on": "2024-01-10", "still_on_page": True},
                    {"domain": "slow.example.org", "uri": SLOW_URL, "extracted_on": "2019-06-15",
                     "last_seen_on": "2023-02-01", "still_on_page": False},
                ],
            },
            {
                "value": "bob@acme.com",
                "first_name": "Bob",
                "last_name": "Stone",
                "sources": [
                    {"domain": "blog.example.com", "uri": BLOG_URL, "extracted_on": "2022-01-01"},
                ],
            },
        ],
    }
}

FEDERATION_XML = """<?xml version="1.0" encoding="utf-8"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">
  <s:Body>
    <GetFederationInformationResponseMessage xmlns="http://schemas.microsoft.com/exchange/2010/Autodiscover">
      <Response>
        <ErrorCode>NoError</ErrorCode>
        <ApplicationUri>outlook.com</ApplicationUri>
        <Domains>
          <Domain>acme.com</Domain>
          <Domain>acme.co.uk</Domain>
          <Domain>ACME-corp.com</Domain>
        </Domains>
      </Response>
    </GetFederationInformationResponseMessage>
  </s:Body>
</s:Envelope>"""


def _services(request: httpx.Request) -> httpx.Response:
    host = request.url.host
    if host == "hunter.test":
        return httpx.Response(200, json=HUNTER_BODY)
    if host == "markitdown.test":
        return httpx.Response(200, json={"markdown": "# Team\n\nJane Doe, CFO. Bob Stone, CTO."})
    if host == "autodiscover.test":
        return httpx.Response(200, text=FEDERATION_XML)
    if host == "llm.test":
        system = json.loads(request.content)["messages"][0]["content"]
        if "JSON" in system:
            content = json.dumps({"subject": "Q3 invoice", "body": "Hi Jane, see attached.", "link": None})
        else:
            content = "Jane Doe is the CFO of Acme."
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})
    return httpx.Response(404, text="not found")


class NoRecordsResolver:
    async def resolve(self, name, rdtype):
        raise dns.resolver.NoAnswer()


@pytest_asyncio.fixture
async def make_coordinator(session_factory, publisher, fake_context, test_settings):
    created = []

    def factory(transport=None, context_factory=None, **overrides):
        async def default_context():
            return fake_context

        coordinator = create_pipeline_coordinator(
            test_settings.model_copy(update=overrides),
            session_factory,
            publisher=publisher,
            context_factory=context_factory or default_context,
            resolver=NoRecordsResolver(),
            http_transport=transport or httpx.MockTransport(_services),
        )
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.stop()


async def _source_by_url(store, email, url):
    for source in await store.list_sources_for_target(email):
        if source.url == url:
            return source
    raise AssertionError(f"{url} not mapped to {email}")


async def _enriched_target(store, convergence, email="jane@acme.com"):
    await store.upsert_domain("acme.com")
    await store.upsert_target(email, "Jane Doe", "acme.com")
    source_id, _, _ = await store.upsert_source(BLOG_URL, "blog.example.com", "hunter.io")
    await store.link_target_source(email, source_id)
    await store.start_processing(source_id)
    await store.mark_source_mined(source_id, {"title": "Team", "content": "Jane Doe, CFO"}, "ok")
    await convergence.evaluate(email)
    return source_id


# ============================================================================
# RECON
# ============================================================================

class TestRecon:

    @pytest.mark.asyncio
    async def test_recon_is_idempotent(self, make_coordinator):
        coordinator = make_coordinator()

        first = await coordinator.run_recon("Acme.com ")
        second = await coordinator.run_recon("acme.com")

        assert first["emailFormat"] == "{first}"
        assert first["targetsCount"] == 2
        assert first["queued"] == 2
        assert second["queued"] == 0

        store = coordinator.store
        assert [t.email for t in await store.list_targets("acme.com")] == ["bob@acme.com", "jane@acme.com"]
        assert await store.count_links() == 3
        assert (await coordinator.queue_stats("source-scraping"))["queued"] == 2

    @pytest.mark.asyncio
    async def test_tenure_start_is_earliest_extraction(self, make_coordinator):
        coordinator = make_coordinator()

        await coordinator.run_recon("acme.com")

        jane = await coordinator.store.get_target("jane@acme.com")
        bob = await coordinator.store.get_target("bob@acme.com")
        assert jane.tenure_start == date(2019, 6, 15)
        assert bob.tenure_start == date(2022, 1, 1)

    @pytest.mark.asyncio
    async def test_source_domains_queued_for_dns(self, make_coordinator):
        coordinator = make_coordinator()

        await coordinator.run_recon("acme.com")

        assert (await coordinator.queue_stats("dns"))["queued"] == 2

    @pytest.mark.asyncio
    async def test_progress_messages(self, make_coordinator, recorder):
        coordinator = make_coordinator()

        await coordinator.run_recon("acme.com")

        messages = [e["message"] for e in recorder.named("reconUpdate")]
        assert messages[0] == "Starting reconnaissance for acme.com using Hunter.io..."
        assert "Found email format for acme.com: {first}" in messages
        assert "Found 2 potential contacts for acme.com" in messages
        assert recorder.named("reconComplete") == [{"domain": "acme.com", "targetsCount": 2}]
        assert recorder.named("domainUpdated") == [{"domain": "acme.com"}]

    @pytest.mark.asyncio
    async def test_hunter_not_configured(self, make_coordinator):
        coordinator = make_coordinator(HUNTER_API_KEY=None)

        with pytest.raises(CollaboratorError):
            await coordinator.run_recon("acme.com")

    @pytest.mark.asyncio
    async def test_hunter_failure_reported(self, make_coordinator, recorder):
        transport = httpx.MockTransport(lambda request: httpx.Response(429, text="rate limited"))
        coordinator = make_coordinator(transport=transport)

        with pytest.raises(CollaboratorError) as exc:
            await coordinator.run_recon("acme.com")

        assert exc.value.status_code == 429
        assert recorder.named("reconUpdate")[-1]["message"].startswith("Reconnaissance for acme.com failed")
        assert recorder.named("reconComplete") == []

    @pytest.mark.asyncio
    async def test_empty_domain_rejected(self, make_coordinator):
        coordinator = make_coordinator()

        with pytest.raises(ValueError):
            await coordinator.run_recon("  ")


# ============================================================================
# END TO END
# ============================================================================

class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_shared_source_and_timeout_enrich_each_target_once(
        self, make_coordinator, fake_context, recorder, wait_for
    ):
        fake_context.routes[SLOW_URL] = {"goto_error": PlaywrightTimeoutError("Timeout 200ms exceeded")}
        coordinator = make_coordinator()
        await coordinator.start()

        await coordinator.run_recon("acme.com")

        async def all_enriched():
            targets = await coordinator.store.list_targets("acme.com")
            return len(targets) == 2 and all(t.status == TargetStatus.ENRICHED.value for t in targets)

        await wait_for(all_enriched)

        store = coordinator.store
        blog = await _source_by_url(store, "jane@acme.com", BLOG_URL)
        slow = await _source_by_url(store, "jane@acme.com", SLOW_URL)
        assert blog.status == SourceStatus.MINED.value
        assert blog.data["content"].startswith("# Team")
        assert blog.data["discovery"]["extracted_on"] == "2021-04-02"
        assert slow.status == SourceStatus.FAILED.value
        assert "timed out" in slow.status_message

        enriched = [e["email"] for e in recorder.named("targetStatusUpdated") if e["status"] == "enriched"]
        assert sorted(enriched) == ["bob@acme.com", "jane@acme.com"]
        assert coordinator.browser_pool.peak_pages <= 3

    @pytest.mark.asyncio
    async def test_lost_job_marks_source_failed(self, make_coordinator, fake_context, wait_for, recorder):
        fake_context.routes[BLOG_URL] = {"goto_delay": 5}
        coordinator = make_coordinator(SCRAPE_JOB_TIMEOUT_SECONDS=0.3)
        await coordinator.start()

        await coordinator.run_recon("acme.com")

        async def failure_finished():
            return [e for e in recorder.named("sourceUpdate") if e["status"] == "failed"]

        await wait_for(failure_finished)

        assert (await coordinator.store.get_target("bob@acme.com")).status == TargetStatus.ENRICHED.value
        blog = await _source_by_url(coordinator.store, "bob@acme.com", BLOG_URL)
        assert blog.status == SourceStatus.FAILED.value
        assert blog.status_message == "Error: Job timed out after 0.3s"
        failed = {(e["sourceId"], e["targetEmail"]) for e in recorder.named("sourceFailed")}
        assert (blog.id, "bob@acme.com") in failed
        assert (blog.id, "jane@acme.com") in failed

    @pytest.mark.asyncio
    async def test_browser_launch_failure_is_fatal(self, make_coordinator):
        async def broken_context():
            raise RuntimeError("Executable doesn't exist")

        coordinator = make_coordinator(context_factory=broken_context)

        with pytest.raises(BrowserUnavailable):
            await coordinator.start()


# ============================================================================
# DOMAINS
# ============================================================================

class TestDomains:

    @pytest.mark.asyncio
    async def test_add_domain_queues_dns_once(self, make_coordinator):
        coordinator = make_coordinator()

        result = await coordinator.add_domain("Acme.com")
        await coordinator.add_domain("acme.com")

        assert result["domain"] == "acme.com"
        assert (await coordinator.queue_stats("dns"))["queued"] == 1

    @pytest.mark.asyncio
    async def test_relate_domain(self, make_coordinator, recorder):
        coordinator = make_coordinator()

        result = await coordinator.relate_domain("acme.com")

        assert result["applicationUri"] == "outlook.com"
        assert result["relatedDomains"] == ["acme.co.uk", "acme-corp.com"]
        names = [d.name for d in await coordinator.store.list_domains()]
        assert sorted(names) == ["acme-corp.com", "acme.co.uk", "acme.com"]
        assert (await coordinator.queue_stats("dns"))["queued"] == 2
        assert recorder.named("relatedDomainsFound") == [
            {"primaryDomain": "acme.com", "relatedDomains": ["acme.co.uk", "acme-corp.com"]}
        ]

    @pytest.mark.asyncio
    async def test_dns_job_without_records_succeeds(self, make_coordinator, wait_for, recorder):
        coordinator = make_coordinator()
        await coordinator.start()

        await coordinator.add_domain("acme.com")

        async def done():
            return (await coordinator.queue_stats("dns"))["succeeded"] == 1

        await wait_for(done)
        domain = await coordinator.store.get_domain("acme.com")
        assert domain.mx is None
        assert domain.dmarc is None
        assert recorder.named("domainUpdated") == [{"domain": "acme.com"}]


# ============================================================================
# SOURCES
# ============================================================================

class TestSources:

    @pytest.mark.asyncio
    async def test_rescrape_reopens_target(self, make_coordinator, recorder):
        coordinator = make_coordinator()
        source_id = await _enriched_target(coordinator.store, coordinator.convergence)
        assert (await coordinator.store.get_target("jane@acme.com")).status == "enriched"

        result = await coordinator.rescrape_source(source_id)

        assert result["sourceId"] == source_id
        assert (await coordinator.store.get_target("jane@acme.com")).status == "pending"
        assert (await coordinator.store.get_source(source_id)).status == "pending"
        assert recorder.named("targetStatusUpdated")[-1] == {
            "email": "jane@acme.com", "status": "pending", "message": "Reopened for re-scrape"
        }
        assert (await coordinator.queue_stats("source-scraping"))["queued"] == 1

    @pytest.mark.asyncio
    async def test_rescrape_while_job_running_scrapes_again(
        self, make_coordinator, fake_context, wait_for, recorder
    ):
        fake_context.routes[BLOG_URL] = {"goto_delay": 0.5}
        coordinator = make_coordinator()
        store = coordinator.store
        await store.upsert_domain("acme.com")
        await store.upsert_target("jane@acme.com", "Jane Doe", "acme.com")
        source_id, _, _ = await store.upsert_source(BLOG_URL, "blog.example.com", "hunter.io")
        await store.link_target_source("jane@acme.com", source_id)
        await coordinator.start()
        await coordinator.queue_sources_for_targets(["jane@acme.com"])

        async def processing():
            return (await store.get_source(source_id)).status == SourceStatus.PROCESSING.value

        await wait_for(processing)
        result = await coordinator.rescrape_source(source_id)
        assert result["rerun"] is True

        async def enriched():
            return (await store.get_target("jane@acme.com")).status == TargetStatus.ENRICHED.value

        await wait_for(enriched)

        assert (await store.get_source(source_id)).status == SourceStatus.MINED.value
        visits = [call for page in fake_context.pages for call in page.goto_calls if call["url"] == BLOG_URL]
        assert len(visits) == 2
        assert [e["sourceId"] for e in recorder.named("sourceMined")] == [source_id]
        stats = await coordinator.queue_stats("source-scraping")
        assert (stats["queued"], stats["active"], stats["succeeded"]) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_failed_job_for_unstarted_source_requeues_it(self, make_coordinator):
        coordinator = make_coordinator()
        store = coordinator.store
        await store.upsert_domain("acme.com")
        await store.upsert_target("jane@acme.com", "Jane Doe", "acme.com")
        source_id, _, _ = await store.upsert_source(BLOG_URL, "blog.example.com", "hunter.io")
        await store.link_target_source("jane@acme.com", source_id)
        job = QueuedJob(
            id=1, stage=Stage.SOURCE_SCRAPING.value,
            payload={"sourceId": source_id, "sourceUrl": BLOG_URL}, attempts=1, max_attempts=1,
        )

        await coordinator._on_job_failed(job, RuntimeError("database is locked"))

        assert (await store.get_source(source_id)).status == SourceStatus.PENDING.value
        assert (await coordinator.queue_stats("source-scraping"))["queued"] == 1

    @pytest.mark.asyncio
    async def test_rescrape_unknown_source(self, make_coordinator):
        coordinator = make_coordinator()

        with pytest.raises(EntityNotFound):
            await coordinator.rescrape_source(999)

    @pytest.mark.asyncio
    async def test_queue_sources_resets_failed(self, make_coordinator):
        coordinator = make_coordinator()
        store = coordinator.store
        await store.upsert_domain("acme.com")
        await store.upsert_target("jane@acme.com", "Jane", "acme.com")
        source_id, _, _ = await store.upsert_source(SLOW_URL, "slow.example.org", "hunter.io")
        await store.link_target_source("jane@acme.com", source_id)
        await store.mark_source_failed(source_id, "Error: Timeout")
        await coordinator.convergence.evaluate("jane@acme.com")

        result = await coordinator.queue_sources_for_targets(["jane@acme.com"])

        assert result == {"success": True, "message": "Queued 1 sources for 1 target(s)", "count": 1}
        assert (await store.get_source(source_id)).status == "pending"
        assert (await store.get_target("jane@acme.com")).status == "pending"

    @pytest.mark.asyncio
    async def test_queue_sources_nothing_to_do(self, make_coordinator):
        coordinator = make_coordinator()

        result = await coordinator.queue_sources_for_targets()

        assert result == {"success": True, "message": "No sources to scrape", "count": 0}

    @pytest.mark.asyncio
    async def test_recover_converges_stranded_targets(self, make_coordinator):
        coordinator = make_coordinator()
        store = coordinator.store
        await store.upsert_domain("acme.com")
        await store.upsert_target("jane@acme.com", "Jane", "acme.com")
        source_id, _, _ = await store.upsert_source(BLOG_URL, None, "hunter.io")
        await store.link_target_source("jane@acme.com", source_id)
        await store.mark_source_failed(source_id, "Error: boom")

        assert await coordinator.recover() == {"requeued": 0, "converged": 1}

    @pytest.mark.asyncio
    async def test_clear_queue(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.run_recon("acme.com")

        assert await coordinator.clear_queue("source-scraping") == 2
        with pytest.raises(ValueError):
            await coordinator.clear_queue("nope")


# ============================================================================
# PROFILES & PRETEXTS
# ============================================================================

class TestProfilesAndPretexts:

    @pytest.mark.asyncio
    async def test_request_profile_dedupes(self, make_coordinator):
        coordinator = make_coordinator()
        await _enriched_target(coordinator.store, coordinator.convergence)

        first = await coordinator.request_profile("jane@acme.com")
        second = await coordinator.request_profile("jane@acme.com")

        assert first.created and not second.created
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_request_profile_unknown_target(self, make_coordinator):
        coordinator = make_coordinator()

        with pytest.raises(EntityNotFound):
            await coordinator.request_profile("ghost@acme.com")

    @pytest.mark.asyncio
    async def test_auto_profile_on_enrichment(self, make_coordinator):
        coordinator = make_coordinator(AUTO_GENERATE_PROFILES=True)

        await _enriched_target(coordinator.store, coordinator.convergence)

        assert (await coordinator.queue_stats(Stage.PROFILE_GENERATION.value))["queued"] == 1

    @pytest.mark.asyncio
    async def test_profile_and_pretext_generation(self, make_coordinator, wait_for):
        coordinator = make_coordinator()
        store = coordinator.store
        await _enriched_target(store, coordinator.convergence)
        await store.upsert_prompt("invoice", "Write to {name} at {domain} about an invoice. {profile}")
        await coordinator.start()

        await coordinator.request_profile("jane@acme.com")

        async def has_profile():
            return (await store.get_target("jane@acme.com")).profile

        assert await wait_for(has_profile) == "Jane Doe is the CFO of Acme."

        await coordinator.request_pretext("jane@acme.com", "invoice")

        async def has_pretext():
            return await store.list_pretexts("jane@acme.com")

        pretexts = await wait_for(has_pretext)
        assert pretexts[0].subject == "Q3 invoice"
        assert pretexts[0].body == "Hi Jane, see attached."
        assert pretexts[0].status == "draft"
        assert "Jane Doe is the CFO of Acme." in pretexts[0].prompt_text

        assert await coordinator.review_pretext(pretexts[0].id, approved=True) == "approved"
        with pytest.raises(InvalidStatusTransition):
            await coordinator.review_pretext(pretexts[0].id, approved=False)

    @pytest.mark.asyncio
    async def test_request_pretext_unknown_prompt(self, make_coordinator):
        coordinator = make_coordinator()
        await _enriched_target(coordinator.store, coordinator.convergence)

        with pytest.raises(EntityNotFound):
            await coordinator.request_pretext("jane@acme.com", "missing")
