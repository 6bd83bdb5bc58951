# backend/recon/services/pretext_worker.py
"""
Pretext Worker - drafts an outreach message for a target from a prompt template

Template placeholders: {name}, {email}, {domain}, {profile}. Unknown
placeholders are left as-is. Drafts are stored with status 'draft' and
reviewed through the coordinator.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from recon.errors import EntityNotFound
from recon.events import EventPublisher, ReconUpdate
from recon.services.entity_store import EntityStore
from recon.services.llm_client import LLMClient
from recon.services.stage_queue import QueuedJob

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write short, plausible business emails. Reply with a JSON object "
    'with the keys "subject", "body" and "link" (link may be null).'
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class _KeepMissing(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_prompt(
    template: str,
    values: Dict[str, Any],
    dos: Optional[List[str]] = None,
    donts: Optional[List[str]] = None
) -> str:
    text = template.format_map(_KeepMissing({k: v or "" for k, v in values.items()}))

    if dos:
        text += "\n\nDo:\n" + "\n".join(f"- {item}" for item in dos)
    if donts:
        text += "\n\nDon't:\n" + "\n".join(f"- {item}" for item in donts)
    return text


def parse_reply(reply: str) -> Tuple[str, str, Optional[str]]:
    """(subject, body, link) from a JSON reply, or first line / rest for plain text"""
    cleaned = _FENCE.sub("", reply.strip())
    try:
        data = json.loads(cleaned)
    except ValueError:
        data = None

    if isinstance(data, dict) and data.get("body"):
        return (data.get("subject") or "").strip(), data["body"].strip(), data.get("link") or None

    lines = reply.strip().splitlines()
    subject = lines[0].strip() if lines else ""
    if subject.lower().startswith("subject:"):
        subject = subject[len("subject:"):].strip()
    body = "\n".join(lines[1:]).strip()
    return subject, body, None


class PretextWorker:

    def __init__(self, store: EntityStore, llm: LLMClient, publisher: EventPublisher):
        self.store = store
        self.llm = llm
        self.publisher = publisher

    async def handle(self, job: QueuedJob) -> Dict[str, Any]:
        email = job.payload["targetEmail"]
        prompt_id = job.payload["promptId"]

        target = await self.store.get_target(email)
        if target is None:
            raise EntityNotFound("Target", email)
        prompt = await self.store.get_prompt(prompt_id)
        if prompt is None:
            raise EntityNotFound("Prompt", prompt_id)

        prompt_text = render_prompt(
            prompt.template,
            {
                "name": target.name,
                "email": target.email,
                "domain": target.domain_name,
                "profile": target.profile,
            },
            dos=prompt.dos,
            donts=prompt.donts,
        )

        reply = await self.llm.complete(SYSTEM_PROMPT, prompt_text)
        subject, body, link = parse_reply(reply)

        pretext_id = await self.store.create_pretext(
            target_email=email,
            prompt_id=prompt.id,
            prompt_text=prompt_text,
            subject=subject,
            body=body,
            link=link,
        )

        await self.publisher.publish(ReconUpdate(
            message=f"Drafted pretext '{subject}' for {email}"
        ))
        logger.info(f"Drafted pretext {pretext_id} for {email} using prompt '{prompt.name}'")
        return {"pretextId": pretext_id, "targetEmail": email}
