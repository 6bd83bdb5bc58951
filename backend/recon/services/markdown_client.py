# backend/recon/services/markdown_client.py
"""
MarkItDown HTTP client

Uploads rendered HTML as a multipart file and returns the Markdown the
service produces. Every failure mode surfaces as ConversionFailure so the
scraping worker can fall back to a placeholder.
"""

import logging
from typing import Optional

import httpx

from recon.errors import ConversionFailure

logger = logging.getLogger(__name__)


class MarkdownClient:

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8490",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def convert(self, html: str) -> str:
        files = {"file": ("webpage.html", html.encode("utf-8"), "text/html")}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/process_file", files=files)
        except httpx.HTTPError as e:
            raise ConversionFailure(f"MarkItDown request failed: {e}") from e

        logger.debug(f"MarkItDown responded with status code: {response.status_code}")

        if response.status_code != 200:
            raise ConversionFailure(
                f"MarkItDown returned status code {response.status_code}: {response.text[:200]}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise ConversionFailure(f"Failed to parse MarkItDown response: {response.text[:200]}") from e

        markdown = result.get("markdown") if isinstance(result, dict) else None
        if not markdown:
            raise ConversionFailure("MarkItDown response missing markdown field")

        return markdown
