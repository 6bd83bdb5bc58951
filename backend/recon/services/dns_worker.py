# backend/recon/services/dns_worker.py
"""
DNS Worker - MX, SPF and DMARC lookups for domains and source domains
"""

import logging
from typing import Any, Dict, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from recon.events import DomainUpdated, EventPublisher
from recon.services.entity_store import EntityStore
from recon.services.stage_queue import QueuedJob

logger = logging.getLogger(__name__)

# Answers that mean "no such record" rather than "lookup failed"
MISSING_RECORD_ERRORS = (
    dns.resolver.NXDOMAIN,
    dns.resolver.NoAnswer,
    dns.resolver.NoNameservers,
)


class DnsWorker:

    def __init__(
        self,
        store: EntityStore,
        publisher: EventPublisher,
        resolver=None,
        lookup_timeout: float = 5.0
    ):
        self.store = store
        self.publisher = publisher
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.lifetime = lookup_timeout
        self.resolver = resolver

    async def handle(self, job: QueuedJob) -> Dict[str, Any]:
        domain = job.payload["domain"]
        is_source_domain = job.payload.get("kind") == "source_domain"

        logger.info(f"Performing DNS lookups for {domain}")
        mx = await self.lookup_mx(domain)
        spf = await self.lookup_spf(domain)
        dmarc = await self.lookup_dmarc(domain)

        await self.store.update_dns_records(domain, mx, spf, dmarc, source_domain=is_source_domain)

        await self.publisher.publish(DomainUpdated(domain=domain))
        return {"domain": domain, "mx": mx, "spf": spf, "dmarc": dmarc}

    async def lookup_mx(self, domain: str) -> Optional[str]:
        answers = await self._resolve(domain, "MX")
        if not answers:
            return None
        records = sorted(
            (record.preference, record.exchange.to_text(omit_final_dot=True))
            for record in answers
        )
        return ", ".join(f"{preference} {host}" for preference, host in records)

    async def lookup_spf(self, domain: str) -> Optional[str]:
        return await self._first_txt(domain, "v=spf1")

    async def lookup_dmarc(self, domain: str) -> Optional[str]:
        return await self._first_txt(f"_dmarc.{domain}", "v=DMARC1")

    async def _first_txt(self, name: str, prefix: str) -> Optional[str]:
        answers = await self._resolve(name, "TXT")
        for record in answers or []:
            text = b"".join(record.strings).decode("utf-8", errors="replace")
            if text.startswith(prefix):
                return text
        return None

    async def _resolve(self, name: str, rdtype: str):
        """Resolve a record set; missing records give None, timeouts propagate for retry"""
        try:
            return await self.resolver.resolve(name, rdtype)
        except MISSING_RECORD_ERRORS:
            logger.debug(f"No {rdtype} records for {name}")
            return None
        except dns.exception.Timeout:
            logger.warning(f"{rdtype} lookup timed out for {name}")
            raise
