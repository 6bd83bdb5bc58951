"""Pydantic schemas for request/response validation."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict
from datetime import date, datetime


# Requests
class DomainRequest(BaseModel):
    """Body of every domain-keyed request."""
    domain: str = Field(..., min_length=1, max_length=255)

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Domain is required")
        return v


class QueueSourcesRequest(BaseModel):
    """Targets whose sources should be (re)queued; empty means all."""
    targetEmails: Optional[List[str]] = None


class PromptCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    template: str = Field(..., min_length=1)
    dos: List[str] = Field(default_factory=list)
    donts: List[str] = Field(default_factory=list)


class PretextRequest(BaseModel):
    promptName: str


class PretextReview(BaseModel):
    approved: bool


# Responses
class DomainResponse(BaseModel):
    name: str
    mx: Optional[str] = None
    spf: Optional[str] = None
    dmarc: Optional[str] = None
    email_format: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class TargetResponse(BaseModel):
    email: str
    name: Optional[str] = None
    profile: Optional[str] = None
    linkedin_url: Optional[str] = None
    domain_name: Optional[str] = None
    tenure_start: Optional[date] = None
    status: str

    model_config = ConfigDict(from_attributes=True)


class SourceResponse(BaseModel):
    id: int
    url: str
    source_domain_name: Optional[str] = None
    discovery_method: str
    status: str
    status_message: Optional[str] = None
    last_checked: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class JobResponse(BaseModel):
    success: bool = True
    jobId: int
    stage: str
    created: bool


class QueueStatsResponse(BaseModel):
    stage: str
    counts: Dict[str, int]
    active: int = 0

