# backend/recon/services/llm_client.py
"""OpenAI-compatible chat completions client used for profiles and pretexts."""

import logging
from typing import Dict, List, Optional

import httpx

from recon.errors import CollaboratorError

logger = logging.getLogger(__name__)


class LLMClient:

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def complete(self, system: str, user: str, temperature: float = 0.4) -> str:
        """Return the assistant message for a single system + user prompt"""
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json={"model": self.model, "messages": messages, "temperature": temperature},
                    headers=headers
                )
        except httpx.HTTPError as e:
            raise CollaboratorError("llm", f"request failed: {e}") from e

        if response.status_code != 200:
            raise CollaboratorError(
                "llm",
                f"API returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CollaboratorError("llm", "malformed completion response") from e

        if not content or not content.strip():
            raise CollaboratorError("llm", "empty completion")

        return content.strip()
