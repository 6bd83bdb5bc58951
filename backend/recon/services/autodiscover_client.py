# backend/recon/services/autodiscover_client.py
"""
Microsoft Autodiscover domain relation

GetFederationInformation lists every domain federated with the same
Microsoft 365 tenant, plus the tenant's application URI.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from bs4 import BeautifulSoup

from recon.errors import CollaboratorError

logger = logging.getLogger(__name__)

SOAP_ACTION = '"http://schemas.microsoft.com/exchange/2010/Autodiscover/Autodiscover/GetFederationInformation"'

REQUEST_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:exm="http://schemas.microsoft.com/exchange/services/2006/messages"
    xmlns:ext="http://schemas.microsoft.com/exchange/services/2006/types"
    xmlns:a="http://www.w3.org/2005/08/addressing"
    xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xmlns:xsd="http://www.w3.org/2001/XMLSchema">
  <soap:Header>
    <a:Action soap:mustUnderstand="1">http://schemas.microsoft.com/exchange/2010/Autodiscover/Autodiscover/GetFederationInformation</a:Action>
    <a:To soap:mustUnderstand="1">{url}</a:To>
    <a:ReplyTo>
      <a:Address>http://www.w3.org/2005/08/addressing/anonymous</a:Address>
    </a:ReplyTo>
  </soap:Header>
  <soap:Body>
    <GetFederationInformationRequestMessage xmlns="http://schemas.microsoft.com/exchange/2010/Autodiscover">
      <Request>
        <Domain>{domain}</Domain>
      </Request>
    </GetFederationInformationRequestMessage>
  </soap:Body>
</soap:Envelope>"""


@dataclass
class RelatedDomains:
    domain: str
    domains: List[str] = field(default_factory=list)
    application_uri: Optional[str] = None

    @property
    def related(self) -> List[str]:
        """Discovered domains other than the one queried"""
        return [name for name in self.domains if name != self.domain]


class AutodiscoverClient:

    def __init__(
        self,
        url: str = "https://autodiscover-s.outlook.com/autodiscover/autodiscover.svc",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def get_related_domains(self, domain: str) -> RelatedDomains:
        body = REQUEST_TEMPLATE.format(url=self.url, domain=domain)
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": SOAP_ACTION,
            "User-Agent": "AutodiscoverClient",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, content=body.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            raise CollaboratorError("autodiscover", f"request failed: {e}") from e

        if response.status_code != 200:
            raise CollaboratorError(
                "autodiscover",
                f"returned status code {response.status_code}",
                status_code=response.status_code
            )

        result = parse_federation_response(domain, response.text)
        logger.info(f"Autodiscover: {len(result.domains)} domains federated with {domain}")
        return result


def parse_federation_response(domain: str, xml: str) -> RelatedDomains:
    # html.parser lower-cases tag names and ignores namespaces
    soup = BeautifulSoup(xml, "html.parser")

    domains: List[str] = []
    for tag in soup.find_all("domain"):
        name = tag.get_text(strip=True).lower()
        if name and name not in domains:
            domains.append(name)

    uri_tag = soup.find("applicationuri")
    application_uri = uri_tag.get_text(strip=True) if uri_tag else None

    return RelatedDomains(domain=domain.lower(), domains=domains, application_uri=application_uri)
