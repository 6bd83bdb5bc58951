"""
Closed status enumerations and their transition tables.

Every status write in the store is checked against these tables. Transitions
flagged ``explicit`` are only legal when the caller passes ``explicit=True``
(re-scrape / reopen requests); workers never perform them.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple, Type

from recon.errors import InvalidStatusTransition


class SourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    MINED = "mined"
    FAILED = "failed"


class TargetStatus(str, Enum):
    PENDING = "pending"
    ENRICHED = "enriched"
    FAILED = "failed"


class PretextStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


Transition = Tuple[Enum, Enum]

SOURCE_TRANSITIONS: FrozenSet[Transition] = frozenset({
    (SourceStatus.PENDING, SourceStatus.PROCESSING),
    (SourceStatus.PENDING, SourceStatus.FAILED),
    (SourceStatus.PROCESSING, SourceStatus.MINED),
    (SourceStatus.PROCESSING, SourceStatus.FAILED),
})

SOURCE_EXPLICIT_TRANSITIONS: FrozenSet[Transition] = frozenset({
    (SourceStatus.MINED, SourceStatus.PENDING),
    (SourceStatus.FAILED, SourceStatus.PENDING),
    (SourceStatus.PROCESSING, SourceStatus.PENDING),
})

TARGET_TRANSITIONS: FrozenSet[Transition] = frozenset({
    (TargetStatus.PENDING, TargetStatus.ENRICHED),
    (TargetStatus.PENDING, TargetStatus.FAILED),
    (TargetStatus.ENRICHED, TargetStatus.FAILED),
})

TARGET_EXPLICIT_TRANSITIONS: FrozenSet[Transition] = frozenset({
    (TargetStatus.ENRICHED, TargetStatus.PENDING),
    (TargetStatus.FAILED, TargetStatus.PENDING),
})

PRETEXT_TRANSITIONS: FrozenSet[Transition] = frozenset({
    (PretextStatus.DRAFT, PretextStatus.APPROVED),
    (PretextStatus.DRAFT, PretextStatus.REJECTED),
})

JOB_TRANSITIONS: FrozenSet[Transition] = frozenset({
    (JobStatus.QUEUED, JobStatus.ACTIVE),
    (JobStatus.ACTIVE, JobStatus.SUCCEEDED),
    (JobStatus.ACTIVE, JobStatus.FAILED),
    (JobStatus.ACTIVE, JobStatus.QUEUED),
})

_TABLES: Dict[Type[Enum], Tuple[str, FrozenSet[Transition], FrozenSet[Transition]]] = {
    SourceStatus: ("SourceData", SOURCE_TRANSITIONS, SOURCE_EXPLICIT_TRANSITIONS),
    TargetStatus: ("Target", TARGET_TRANSITIONS, TARGET_EXPLICIT_TRANSITIONS),
    PretextStatus: ("Pretext", PRETEXT_TRANSITIONS, frozenset()),
    JobStatus: ("StageJob", JOB_TRANSITIONS, frozenset()),
}


def is_allowed(current: Enum, requested: Enum, explicit: bool = False) -> bool:
    """Whether ``current -> requested`` is in the table for its enum."""
    _, automatic, manual = _TABLES[type(requested)]
    pair = (type(requested)(current), requested)
    return pair in automatic or (explicit and pair in manual)


def sources_for(requested: Enum, explicit: bool = False) -> list:
    """All statuses from which ``requested`` may be reached."""
    _, automatic, manual = _TABLES[type(requested)]
    allowed = set(automatic) | (set(manual) if explicit else set())
    return [src.value for src, dst in allowed if dst == requested]


def ensure_transition(current: Enum, requested: Enum, explicit: bool = False) -> None:
    """Raise InvalidStatusTransition unless ``current -> requested`` is allowed."""
    if not is_allowed(current, requested, explicit=explicit):
        entity = _TABLES[type(requested)][0]
        raise InvalidStatusTransition(
            entity,
            type(requested)(current).value,
            requested.value,
        )


def is_terminal(status: SourceStatus) -> bool:
    return status in (SourceStatus.MINED, SourceStatus.FAILED)
