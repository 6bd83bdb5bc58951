"""
Progress event bus.

Best-effort fan-out of typed progress messages to whoever is subscribed.
Nothing is persisted and nothing is retried: publish() never raises, so the
state mutation that triggered an event is never affected by delivery.
"""

import asyncio
import logging
from typing import Awaitable, Callable, ClassVar, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Dict], Awaitable[None]]


# ========================================
# EVENT MESSAGES
# ========================================

class ProgressEvent(BaseModel):
    """Base class; event_name is the wire name subscribers see."""
    event_name: ClassVar[str] = ""


class SourceUpdate(ProgressEvent):
    event_name: ClassVar[str] = "sourceUpdate"
    sourceId: int
    status: str
    message: str


class SourceMined(ProgressEvent):
    event_name: ClassVar[str] = "sourceMined"
    sourceId: int
    targetEmail: str
    status: str = "mined"


class SourceFailed(ProgressEvent):
    event_name: ClassVar[str] = "sourceFailed"
    sourceId: int
    targetEmail: str
    status: str = "failed"


class TargetStatusUpdated(ProgressEvent):
    event_name: ClassVar[str] = "targetStatusUpdated"
    email: str
    status: str
    message: str


class DomainUpdated(ProgressEvent):
    event_name: ClassVar[str] = "domainUpdated"
    domain: str


class ReconUpdate(ProgressEvent):
    event_name: ClassVar[str] = "reconUpdate"
    message: str


class ReconComplete(ProgressEvent):
    event_name: ClassVar[str] = "reconComplete"
    domain: str
    targetsCount: int


class RelatedDomainsFound(ProgressEvent):
    event_name: ClassVar[str] = "relatedDomainsFound"
    primaryDomain: str
    relatedDomains: List[str]


# ========================================
# PUBLISHER
# ========================================

class EventPublisher:
    """Fire-and-forget broadcaster with independently attached subscribers."""

    def __init__(self, delivery_timeout: float = 2.0):
        self.delivery_timeout = delivery_timeout
        self._subscribers: List[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Attach a subscriber; returns a callable that detaches it."""
        self._subscribers.append(subscriber)

        def unsubscribe():
            self.unsubscribe(subscriber)

        return unsubscribe

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    async def publish(self, event: ProgressEvent) -> int:
        """
        Deliver an event to every current subscriber.

        Returns the number of subscribers that accepted it. Failures and
        slow subscribers are logged and skipped.
        """
        if not self._subscribers:
            logger.debug(f"No subscribers, dropping {event.event_name}")
            return 0

        payload = event.model_dump()
        delivered = 0

        # Snapshot so subscribe/unsubscribe during delivery is safe
        for subscriber in list(self._subscribers):
            try:
                await asyncio.wait_for(
                    subscriber(event.event_name, payload),
                    timeout=self.delivery_timeout
                )
                delivered += 1
            except asyncio.TimeoutError:
                logger.warning(f"Subscriber timed out delivering {event.event_name}")
            except Exception as e:
                logger.warning(f"Subscriber failed delivering {event.event_name}: {e}")

        return delivered


class EventRecorder:
    """In-memory subscriber that keeps every event it receives."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self.events: List[tuple] = []

    async def __call__(self, name: str, payload: Dict) -> None:
        self.events.append((name, payload))
        if self.limit and len(self.events) > self.limit:
            del self.events[0]

    def named(self, name: str) -> List[Dict]:
        return [payload for event_name, payload in self.events if event_name == name]
