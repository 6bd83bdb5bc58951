# backend/recon/services/hunter_client.py
"""
Hunter.io contact discovery

Domain search returns the domain's email pattern and the contacts found,
each with the pages they were discovered on.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import httpx

from recon.errors import CollaboratorError

logger = logging.getLogger(__name__)


@dataclass
class DiscoverySource:
    uri: str
    domain: Optional[str] = None
    extracted_on: Optional[str] = None
    last_seen_on: Optional[str] = None
    still_on_page: Optional[bool] = None

    @property
    def extracted_date(self) -> Optional[date]:
        return _parse_date(self.extracted_on)

    def metadata(self) -> Dict[str, Any]:
        """Discovery details kept on the SourceData payload"""
        return {
            "domain": self.domain,
            "extracted_on": self.extracted_on,
            "last_seen_on": self.last_seen_on,
            "still_on_page": self.still_on_page,
        }


@dataclass
class Contact:
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    linkedin_url: Optional[str] = None
    sources: List[DiscoverySource] = field(default_factory=list)

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def tenure_start(self) -> Optional[date]:
        """Earliest date this contact was seen on any source"""
        dates = [d for d in (source.extracted_date for source in self.sources) if d]
        return min(dates) if dates else None


@dataclass
class DomainSearchResult:
    domain: str
    pattern: Optional[str] = None
    contacts: List[Contact] = field(default_factory=list)


class HunterClient:

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.hunter.io/v2",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def search_domain(self, domain: str) -> DomainSearchResult:
        if not self.api_key:
            raise CollaboratorError("hunter", "Hunter API key not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/domain-search",
                    params={"domain": domain, "api_key": self.api_key}
                )
        except httpx.HTTPError as e:
            raise CollaboratorError("hunter", f"request failed: {e}") from e

        if response.status_code != 200:
            raise CollaboratorError(
                "hunter",
                f"API returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            raise CollaboratorError("hunter", "invalid JSON response") from e

        result = parse_domain_search(domain, body)
        logger.info(f"Hunter: {len(result.contacts)} contacts for {domain} (pattern={result.pattern})")
        return result


def parse_domain_search(domain: str, body: Dict[str, Any]) -> DomainSearchResult:
    data = body.get("data") or {}
    contacts = []

    for entry in data.get("emails") or []:
        if not entry.get("value"):
            continue
        contacts.append(Contact(
            email=entry["value"].lower(),
            first_name=entry.get("first_name"),
            last_name=entry.get("last_name"),
            linkedin_url=entry.get("linkedin"),
            sources=[
                DiscoverySource(
                    uri=source["uri"],
                    domain=source.get("domain"),
                    extracted_on=source.get("extracted_on"),
                    last_seen_on=source.get("last_seen_on"),
                    still_on_page=source.get("still_on_page"),
                )
                for source in entry.get("sources") or []
                if source.get("uri")
            ],
        ))

    return DomainSearchResult(domain=domain, pattern=data.get("pattern"), contacts=contacts)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError:
        return None
