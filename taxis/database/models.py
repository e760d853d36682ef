"""SQLAlchemy models for all database tables."""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CHAR,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TIMESTAMP,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taxis.core.database import Base


class JobStatus(str, enum.Enum):
    """Job lifecycle states.

    ``running`` loops back into itself across slices; only ``completed`` and
    ``failed`` are terminal.
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Upload(Base):
    """An uploaded spreadsheet. Immutable once created."""

    __tablename__ = "uploads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    blob_key: Mapped[str] = mapped_column(String, nullable=False)
    original_name: Mapped[str] = mapped_column(String, nullable=False)
    store: Mapped[str | None] = mapped_column(String(20), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default="NOW()"
    )

    # Relationships
    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="upload")


class Job(Base):
    """One processing job over an upload's rows."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    upload_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("uploads.id"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=JobStatus.QUEUED.value
    )  # queued | running | completed | failed
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    rows_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rows_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cursor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_blob_key: Mapped[str | None] = mapped_column(String, nullable=True)
    tokens_in: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_out: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    restarted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default="NOW()"
    )
    started_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Relationships
    upload: Mapped["Upload"] = relationship("Upload", back_populates="jobs")

    __table_args__ = (
        Index("ix_jobs_status_heartbeat", "status", "last_heartbeat"),
    )


class MasterRecord(Base):
    """Aggregate record, exactly one row per pair id."""

    __tablename__ = "master_records"

    pair_id: Mapped[str] = mapped_column(String, primary_key=True)

    # Concept identity
    concept_a: Mapped[str] = mapped_column(String(255), nullable=False)
    code_a: Mapped[str] = mapped_column(String(20), nullable=False)
    system_a: Mapped[str] = mapped_column(String(20), nullable=False)
    type_a: Mapped[str | None] = mapped_column(String(20), nullable=True)
    concept_b: Mapped[str] = mapped_column(String(255), nullable=False)
    code_b: Mapped[str] = mapped_column(String(20), nullable=False)
    system_b: Mapped[str] = mapped_column(String(20), nullable=False)
    type_b: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Additive counts
    cooc_obs: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cooc_event_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    a_before_b: Mapped[int | None] = mapped_column(Integer, nullable=True)
    same_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    b_before_a: Mapped[int | None] = mapped_column(Integer, nullable=True)
    n_a: Mapped[int | None] = mapped_column(Integer, nullable=True)
    n_b: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_persons: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Write-once statistics
    expected_obs: Mapped[Decimal | None] = mapped_column(Numeric(19, 2), nullable=True)
    lift: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    lift_lower_95: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    lift_upper_95: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    z_score: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    ab_h: Mapped[Decimal | None] = mapped_column(Numeric(19, 2), nullable=True)
    a_only_h: Mapped[Decimal | None] = mapped_column(Numeric(19, 2), nullable=True)
    b_only_h: Mapped[Decimal | None] = mapped_column(Numeric(19, 2), nullable=True)
    neither_h: Mapped[Decimal | None] = mapped_column(Numeric(19, 2), nullable=True)
    odds_ratio: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    or_lower_95: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    or_upper_95: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    directionality_ratio: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    dir_prop_a_before_b: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    dir_lower_95: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    dir_upper_95: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    confidence_a_to_b: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)
    confidence_b_to_a: Mapped[Decimal | None] = mapped_column(Numeric(19, 4), nullable=True)

    # Classification (immutable once set)
    relationship_type: Mapped[str] = mapped_column(String(64), nullable=False)
    relationship_code: Mapped[int] = mapped_column(Integer, nullable=False)
    rationale: Mapped[str] = mapped_column(String(1024), nullable=False)

    source_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Provenance
    llm_date: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    llm_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    llm_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Human review
    human_date: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    human_reviewer: Mapped[str | None] = mapped_column(String(254), nullable=True)
    human_comment: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(String(12), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default="NOW()"
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default="NOW()", nullable=False
    )

    __table_args__ = (
        Index("ix_master_records_code_a_system_a", "code_a", "system_a"),
        Index("ix_master_records_code_b_system_b", "code_b", "system_b"),
    )


class LlmCacheEntry(Base):
    """Classification cache, at most one row per prompt key."""

    __tablename__ = "llm_cache"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    prompt_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    result: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_in: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_out: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default="NOW()"
    )


class Concept(Base):
    """Reference vocabulary concept. Read-only for this service."""

    __tablename__ = "concepts"

    concept_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    concept_name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain_id: Mapped[str] = mapped_column(String(20), nullable=False)
    vocabulary_id: Mapped[str] = mapped_column(String(20), nullable=False)
    concept_class_id: Mapped[str] = mapped_column(String(20), nullable=False)
    standard_concept: Mapped[str | None] = mapped_column(CHAR(1), nullable=True)
    concept_code: Mapped[str] = mapped_column(String(50), nullable=False)
    valid_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    invalid_reason: Mapped[str | None] = mapped_column(CHAR(1), nullable=True)

    __table_args__ = (
        Index("ux_concepts_vocabulary_code", "vocabulary_id", "concept_code", unique=True),
        Index("ix_concepts_domain", "domain_id"),
    )


MASTER_RECORD_FIELDS: frozenset[str] = frozenset(MasterRecord.__table__.columns.keys())
