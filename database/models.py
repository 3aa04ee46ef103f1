"""
PropelAI Database Models
SQLAlchemy async models for proposal jobs, volumes and durable pipeline state
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from core.state import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ============================================
# Jobs & Volumes
# ============================================

class ProposalJob(Base):
    """One proposal-generation request."""
    __tablename__ = "proposal_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="queued", nullable=False)
    progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[str] = mapped_column(Text, default="Queued")
    current_stage: Mapped[Optional[str]] = mapped_column(String(64))
    current_agent: Mapped[Optional[str]] = mapped_column(String(64))
    current_volume: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    inputs: Mapped[dict] = mapped_column(JSONB, default=dict)
    stage_progress: Mapped[dict] = mapped_column(JSONB, default=dict)

    volume_page_limits: Mapped[dict] = mapped_column(JSONB, default=dict)
    company_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    rfp_parsed_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    validation_report: Mapped[dict] = mapped_column(JSONB, default=dict)
    content_outlines: Mapped[dict] = mapped_column(JSONB, default=dict)

    quality_checks: Mapped[list] = mapped_column(JSONB, default=list)
    final_html: Mapped[Optional[str]] = mapped_column(Text)
    final_report: Mapped[dict] = mapped_column(JSONB, default=dict)

    preparation_phase_status: Mapped[str] = mapped_column(String(32), default="pending")
    assembly_status: Mapped[str] = mapped_column(String(32), default="pending")
    final_scoring_status: Mapped[str] = mapped_column(String(32), default="pending")
    awaiting_user_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    estimated_minutes: Mapped[dict] = mapped_column(JSONB, default=dict)

    # Optimistic concurrency for read-merge-write of stage_progress
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_proposal_jobs_status_updated", "status", "updated_at"),
        Index("idx_proposal_jobs_company", "company_id"),
    )


class ProposalVolume(Base):
    """Volume sub-job; its content column is the checkpoint."""
    __tablename__ = "proposal_volumes"

    job_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("proposal_jobs.job_id", ondelete="CASCADE"),
        primary_key=True,
    )
    number: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    page_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    score: Mapped[Optional[int]] = mapped_column(Integer)
    iteration: Mapped[int] = mapped_column(Integer, default=0)
    insights: Mapped[dict] = mapped_column(JSONB, default=dict)
    compliance_details: Mapped[dict] = mapped_column(JSONB, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class IterationRecordRow(Base):
    """Append-only rework log."""
    __tablename__ = "iteration_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    job_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("proposal_jobs.job_id", ondelete="CASCADE"),
        nullable=False,
    )
    volume: Mapped[int] = mapped_column(Integer, nullable=False)
    iteration: Mapped[int] = mapped_column(Integer, nullable=False)
    user_feedback: Mapped[str] = mapped_column(Text, default="")
    issues_addressed: Mapped[list] = mapped_column(JSONB, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_iteration_records_job_volume", "job_id", "volume", "iteration"),
    )


# ============================================
# Durable step substrate
# ============================================

class StepResult(Base):
    """Persisted output of a completed pipeline step."""
    __tablename__ = "step_results"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    output: Mapped[Optional[dict]] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class EventWait(Base):
    """Durable continuation waiting on an inbound event."""
    __tablename__ = "event_waits"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    event_name: Mapped[str] = mapped_column(String(100), nullable=False)
    match: Mapped[dict] = mapped_column(JSONB, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    event_data: Mapped[Optional[dict]] = mapped_column(JSONB)

    __table_args__ = (
        Index("idx_event_waits_open", "job_id", "resolved"),
    )


class JobEvent(Base):
    """Immutable log of every event sent for a job."""
    __tablename__ = "job_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    job_id: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_job_events_job_created", "job_id", "created_at"),
    )
