"""Error taxonomy for the recon pipeline."""

from typing import Optional


class ReconError(Exception):
    """Base class for every pipeline error."""


class NavigationTimeout(ReconError):
    """Page never reached a usable state within the navigation bound."""


class ExtractionFailure(ReconError):
    """Expected content region absent from the rendered page."""


class ConversionFailure(ReconError):
    """Markdown collaborator unreachable or returned malformed output."""


class StoreWriteFailure(ReconError):
    """Entity store unavailable."""


class EnqueueFailure(ReconError):
    """Queue storage unavailable while enqueueing a job."""


class BrowserUnavailable(ReconError):
    """Shared browser could not be launched or has been closed."""


class CollaboratorError(ReconError):
    """An external service (Hunter, Autodiscover, LLM) failed."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class EntityNotFound(ReconError):
    """A referenced record does not exist."""

    def __init__(self, entity: str, key):
        super().__init__(f"{entity} {key!r} not found")
        self.entity = entity
        self.key = key


class InvalidStatusTransition(ReconError):
    """A status write outside the entity's transition table."""

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(f"{entity}: transition {current} -> {requested} is not allowed")
        self.entity = entity
        self.current = current
        self.requested = requested
