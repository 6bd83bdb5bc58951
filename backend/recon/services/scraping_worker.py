# backend/recon/services/scraping_worker.py
"""
Source Scraping Worker

Handles one source-scraping job:
    fetching -> extracting -> converting -> stored
Any step failure collapses to 'failed' (on the final attempt) with a
human-readable status message. Convergence runs for every mapped target
after the source reaches a terminal status.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from recon.errors import ConversionFailure, EntityNotFound, ExtractionFailure, NavigationTimeout
from recon.events import EventPublisher, SourceFailed, SourceMined, SourceUpdate
from recon.services.browser_pool import BrowserPool
from recon.services.convergence import StatusConvergenceEngine
from recon.services.entity_store import EntityStore
from recon.services.markdown_client import MarkdownClient
from recon.services.stage_queue import QueuedJob
from recon.services.url_rules import content_selector, substitute_profile_url
from recon.status import SourceStatus, is_terminal
from recon.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

REGION_HTML_JS = """(selector) => {
    const element = document.querySelector(selector);
    return element ? element.innerHTML : null;
}"""


@dataclass
class ScrapeResult:
    url: str
    title: str
    ready_state: str
    content: str
    converted: bool = True
    conversion_error: Optional[str] = None


class ScrapingWorker:

    def __init__(
        self,
        store: EntityStore,
        browser_pool: BrowserPool,
        converter: MarkdownClient,
        convergence: StatusConvergenceEngine,
        publisher: EventPublisher,
        navigation_timeout: float = 7.0,
        scroll_settle: float = 2.0,
        settle_jitter: float = 1.0
    ):
        self.store = store
        self.browser_pool = browser_pool
        self.converter = converter
        self.convergence = convergence
        self.publisher = publisher
        self.navigation_timeout = navigation_timeout
        self.scroll_settle = scroll_settle
        self.settle_jitter = settle_jitter

    # ========================================================================
    # JOB HANDLER
    # ========================================================================

    async def handle(self, job: QueuedJob) -> Dict[str, Any]:
        source_id = job.payload["sourceId"]
        source_url = job.payload["sourceUrl"]

        source = await self.store.get_source(source_id)
        if source is None:
            raise EntityNotFound("SourceData", source_id)

        if not await self.store.start_processing(source_id):
            current = await self.store.get_source(source_id)
            if current is None or is_terminal(current.status):
                # Duplicate delivery of a job that already finished
                logger.info(f"Source {source_id} already {current.status if current else 'gone'}, skipping")
                return {"success": True, "sourceId": source_id, "skipped": True}
            logger.info(f"Redelivered job {job.id} for source {source_id}, resuming")

        await self.publisher.publish(SourceUpdate(
            sourceId=source_id,
            status=SourceStatus.PROCESSING.value,
            message=f"Started scraping source: {source_url}"
        ))

        prior = dict(source.data or {})
        scrape_url = source_url
        try:
            substitute = substitute_profile_url(
                source_url, await self.store.profile_urls_for_source(source_id)
            )
            if substitute:
                logger.info(f"Source {source_id}: scraping {substitute} instead of redirect {source_url}")
                scrape_url = substitute

            result = await self.scrape(scrape_url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._record_failure(job, source_id, source_url, e)
            raise

        data = {
            "scrapedAt": utc_now_iso(),
            "title": result.title,
            "url": result.url,
            "content": result.content,
        }
        if scrape_url != source_url:
            data["originalUrl"] = source_url
        # Re-scrapes keep the discovery metadata from the first run
        data["discovery"] = prior.get("discovery", {}) if "scrapedAt" in prior else prior

        if result.converted:
            message = "Successfully scraped source"
        else:
            message = f"Scraped source, markdown conversion failed: {result.conversion_error}"
            logger.warning(f"Source {source_id}: {message}")

        if not await self.store.mark_source_mined(source_id, data, message):
            # Reset for a re-scrape while this run was in flight; the queued re-run owns it now
            logger.warning(f"Source {source_id} left processing during job {job.id}; result discarded")
            return {"success": True, "sourceId": source_id, "superseded": True}
        await self.finish(source_id, SourceStatus.MINED, f"Completed scraping source: {source_url}")

        logger.info(f"Scraped source {source_id} ({scrape_url})")
        return {"success": True, "sourceId": source_id, "message": message}

    async def _record_failure(self, job: QueuedJob, source_id: int, source_url: str, error: Exception) -> None:
        reason = str(error) or error.__class__.__name__

        if not job.is_final_attempt:
            message = f"Attempt {job.attempts}/{job.max_attempts} failed: {reason}; retrying"
            logger.warning(f"Source {source_id}: {message}")
            await self.store.set_source_message(source_id, message)
            await self.publisher.publish(SourceUpdate(
                sourceId=source_id,
                status=SourceStatus.PROCESSING.value,
                message=message
            ))
            return

        logger.error(f"Error scraping source {source_id} ({source_url}): {reason}")
        if not await self.store.mark_source_failed(
            source_id, f"Error: {reason}", only_from=SourceStatus.PROCESSING
        ):
            logger.warning(f"Source {source_id} left processing during job {job.id}; failure not recorded")
            return
        await self.finish(
            source_id,
            SourceStatus.FAILED,
            f"Failed to scrape source: {source_url} - {reason}"
        )

    async def finish(self, source_id: int, status: SourceStatus, message: str) -> None:
        """Converge each mapped target and notify clients"""
        event_cls = SourceMined if status == SourceStatus.MINED else SourceFailed

        for email in await self.store.target_emails_for_source(source_id):
            await self.convergence.evaluate(email)
            await self.publisher.publish(event_cls(sourceId=source_id, targetEmail=email))

        await self.publisher.publish(SourceUpdate(
            sourceId=source_id,
            status=status.value,
            message=message
        ))

    # ========================================================================
    # BROWSER STEPS
    # ========================================================================

    async def scrape(self, url: str) -> ScrapeResult:
        """Render a page in the shared browser and convert it to Markdown"""
        async with self.browser_pool.page() as page:
            await self._fetch(page, url)
            html, title, ready_state = await self._extract(page, url)

        try:
            content = await self.converter.convert(html)
            return ScrapeResult(url, title, ready_state, content)
        except ConversionFailure as e:
            logger.error(f"Error converting HTML to Markdown for {url}: {e}")
            placeholder = f"Failed to convert to markdown. Title: {title}\nURL: {url}\nStatus: {ready_state}"
            return ScrapeResult(url, title, ready_state, placeholder, converted=False, conversion_error=str(e))

    async def _fetch(self, page, url: str) -> None:
        logger.debug(f"Navigating to: {url}")
        try:
            await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout * 1000
            )
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(
                f"Navigation to {url} timed out after {self.navigation_timeout:g}s"
            ) from e

        # Network idle or the fallback delay, whichever comes first
        try:
            await asyncio.wait_for(
                page.wait_for_load_state("networkidle"),
                timeout=self.navigation_timeout
            )
        except (asyncio.TimeoutError, PlaywrightTimeoutError):
            logger.debug(f"Network never settled for {url}, continuing")

    async def _extract(self, page, url: str):
        await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight / 2)")
        await self._settle()
        await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")
        await self._settle()

        selector = content_selector(url)
        if selector:
            html = await page.evaluate(REGION_HTML_JS, selector)
            if not html:
                raise ExtractionFailure(f"No content found in <{selector}> region of {url}")
        else:
            html = await page.evaluate("() => document.documentElement.innerHTML")
            if not html:
                raise ExtractionFailure(f"No content found in the page: {url}")

        try:
            ready_state = await page.evaluate("() => document.readyState")
            title = await page.title()
        except PlaywrightError as e:
            logger.warning(f"Could not read page metadata for {url}: {e}")
            ready_state, title = "unknown", ""

        return html, title, ready_state

    async def _settle(self) -> None:
        await asyncio.sleep(self.scroll_settle + random.uniform(0, self.settle_jitter))
