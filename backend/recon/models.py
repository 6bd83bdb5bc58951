"""
SQLAlchemy ORM models for the recon pipeline.

Status columns are plain strings guarded by CHECK constraints; the legal
transitions between their values live in recon.status.
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, Date, DateTime, JSON, Index,
    ForeignKey, CheckConstraint, UniqueConstraint
)
from sqlalchemy.sql import func

from recon.database import Base
from recon.status import SourceStatus, TargetStatus, PretextStatus, JobStatus


def _check(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# DOMAINS
# ============================================================================

class Domain(Base):
    """Organisation domain under reconnaissance."""
    __tablename__ = "domains"

    name = Column(String(255), primary_key=True)
    mx = Column(Text)
    spf = Column(Text)
    dmarc = Column(Text)
    email_format = Column(String(255))
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<Domain(name='{self.name}')>"


class SourceDomain(Base):
    """Host domain of a discovered source page."""
    __tablename__ = "source_domains"

    name = Column(String(255), primary_key=True)
    mx = Column(Text)
    spf = Column(Text)
    dmarc = Column(Text)
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# TARGETS & SOURCES
# ============================================================================

class Target(Base):
    """A contact belonging to a domain."""
    __tablename__ = "targets"

    email = Column(String(320), primary_key=True)
    name = Column(String(255))
    profile = Column(Text)
    linkedin_url = Column(String(1024))
    domain_name = Column(String(255), ForeignKey("domains.name"), index=True)
    tenure_start = Column(Date)
    status = Column(String(20), nullable=False, default=TargetStatus.PENDING.value)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        CheckConstraint(_check("status", TargetStatus), name="chk_target_status"),
    )

    def __repr__(self):
        return f"<Target(email='{self.email}', status='{self.status}')>"


class SourceData(Base):
    """A page that mentions one or more targets."""
    __tablename__ = "source_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String(2048), nullable=False, unique=True)
    source_domain_name = Column(String(255), ForeignKey("source_domains.name"), index=True)
    discovery_method = Column(String(100), nullable=False)
    data = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=SourceStatus.PENDING.value, index=True)
    status_message = Column(Text)
    last_checked = Column(DateTime, server_default=func.now())
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        CheckConstraint(_check("status", SourceStatus), name="chk_source_status"),
    )

    def __repr__(self):
        return f"<SourceData(id={self.id}, url='{self.url}', status='{self.status}')>"


class TargetSourceMap(Base):
    """Many-to-many link between targets and sources."""
    __tablename__ = "target_source_map"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_email = Column(String(320), ForeignKey("targets.email"), nullable=False, index=True)
    source_id = Column(Integer, ForeignKey("source_data.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("target_email", "source_id", name="uq_target_source"),
    )


# ============================================================================
# PROMPTS & PRETEXTS
# ============================================================================

class Prompt(Base):
    """Pretext prompt template."""
    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    template = Column(Text, nullable=False)
    dos = Column(JSON, default=list)
    donts = Column(JSON, default=list)
    created_at = Column(DateTime, server_default=func.now())


class Pretext(Base):
    """Drafted pretext for a target."""
    __tablename__ = "pretexts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_email = Column(String(320), ForeignKey("targets.email"), nullable=False, index=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id"))
    prompt_text = Column(Text)
    subject = Column(Text)
    body = Column(Text)
    link = Column(Text)
    status = Column(String(20), nullable=False, default=PretextStatus.DRAFT.value)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        CheckConstraint(_check("status", PretextStatus), name="chk_pretext_status"),
    )


# ============================================================================
# STAGE QUEUE
# ============================================================================

class StageJob(Base):
    """
    Durable job row for a pipeline stage.

    active_key is "<stage>:<dedupe_key>" while the job is queued or active and
    NULL once it finishes; the unique index on it suppresses duplicate
    unfinished jobs.
    rerun_requested marks an active job that must run once more after its
    current delivery, because identical work was requested mid-run.
    """
    __tablename__ = "stage_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    dedupe_key = Column(String(2048))
    active_key = Column(String(2100), unique=True)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    available_at = Column(DateTime, nullable=False)
    locked_by = Column(String(255))
    locked_at = Column(DateTime)
    lease_expires_at = Column(DateTime)
    rerun_requested = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text)
    result = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
    finished_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(_check("status", JobStatus), name="chk_job_status"),
        Index("idx_stage_jobs_claim", "stage", "status", "available_at"),
    )

    def __repr__(self):
        return f"<StageJob(id={self.id}, stage='{self.stage}', status='{self.status}')>"
