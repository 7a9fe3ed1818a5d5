"""SQLAlchemy models for ERIS persistence."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base
from .base import (
    BusinessType,
    ConfidenceTier,
    LinkStatus,
    PersistenceStatus,
    ProcessingStatus,
    RecordType,
    ResolutionStatus,
    SessionStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type) -> SAEnum:
    """Store an enum by value in a VARCHAR column."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class IngestionSession(Base):
    """One ingestion run against one source."""

    __tablename__ = "ingestion_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    source: Mapped[str] = mapped_column(String(50), index=True)
    strategy: Mapped[str] = mapped_column(String(20))
    range_params: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[SessionStatus] = mapped_column(
        _enum(SessionStatus), default=SessionStatus.PENDING, index=True
    )

    found: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    existing: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    current_page: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pages_processed: Mapped[int] = mapped_column(Integer, default=0)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    log_output: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class ProcessingLog(Base):
    """Audit entry written once per completed page or batch."""

    __tablename__ = "processing_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("ingestion_sessions.id", ondelete="CASCADE"), index=True
    )
    source: Mapped[str] = mapped_column(String(50))
    page: Mapped[int] = mapped_column(Integer)
    items_found: Mapped[int] = mapped_column(Integer, default=0)
    items_created: Mapped[int] = mapped_column(Integer, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, default=0)
    items_existing: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list[str]] = mapped_column(JSON, default=list)
    scraped_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class StagingRecord(Base):
    """In-flight record of one session, retained for audit."""

    __tablename__ = "staging_records"
    __table_args__ = (UniqueConstraint("session_id", "source_record_id", "page"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("ingestion_sessions.id", ondelete="CASCADE"), index=True
    )
    source: Mapped[str] = mapped_column(String(50))
    source_record_id: Mapped[str] = mapped_column(String(100))
    page: Mapped[int] = mapped_column(Integer)
    offender_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        _enum(ProcessingStatus), default=ProcessingStatus.FETCHING
    )
    persistence_status: Mapped[PersistenceStatus] = mapped_column(
        _enum(PersistenceStatus), default=PersistenceStatus.PENDING
    )
    enforcement_record_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Offender(Base):
    """Canonical offender identity.

    ``normalized_name`` is derived from ``name`` when the row is created and
    is never edited by hand. ``postcode_key`` is the normalized postcode or
    an empty string so that the pair is usable as a unique key.
    """

    __tablename__ = "offenders"
    __table_args__ = (UniqueConstraint("normalized_name", "postcode_key"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(500))
    normalized_name: Mapped[str] = mapped_column(String(500), index=True)
    postcode_key: Mapped[str] = mapped_column(String(10), default="")
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    town: Mapped[str | None] = mapped_column(String(100), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    postcode: Mapped[str | None] = mapped_column(String(10), nullable=True)
    company_number: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    business_type: Mapped[BusinessType] = mapped_column(
        _enum(BusinessType), default=BusinessType.OTHER
    )
    agencies: Mapped[list[str]] = mapped_column(JSON, default=list)

    total_records: Mapped[int] = mapped_column(Integer, default=0)
    total_cases: Mapped[int] = mapped_column(Integer, default=0)
    total_notices: Mapped[int] = mapped_column(Integer, default=0)
    total_fines: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    first_action_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_action_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class EnforcementRecord(Base):
    """A persisted regulator record (court case or notice)."""

    __tablename__ = "enforcement_records"
    __table_args__ = (UniqueConstraint("source", "regulator_id"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    source: Mapped[str] = mapped_column(String(50))
    regulator_id: Mapped[str] = mapped_column(String(100))
    record_type: Mapped[RecordType] = mapped_column(_enum(RecordType), default=RecordType.CASE)

    offender_name: Mapped[str] = mapped_column(String(500))
    offender_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    offender_postcode: Mapped[str | None] = mapped_column(String(10), nullable=True)
    company_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    action_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    fine: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    costs: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    result: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    legislation: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    offender_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("offenders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    link_status: Mapped[LinkStatus] = mapped_column(_enum(LinkStatus), default=LinkStatus.NONE)
    match_tier: Mapped[ConfidenceTier | None] = mapped_column(
        _enum(ConfidenceTier), nullable=True
    )
    match_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class ReviewCase(Base):
    """An ambiguous identity match awaiting a human decision."""

    __tablename__ = "review_cases"
    __table_args__ = (UniqueConstraint("source", "regulator_id"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    source: Mapped[str] = mapped_column(String(50))
    regulator_id: Mapped[str] = mapped_column(String(100))
    staging_record_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    enforcement_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("enforcement_records.id", ondelete="CASCADE"), nullable=True
    )
    offender_name: Mapped[str] = mapped_column(String(500))
    candidates: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    best_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[ResolutionStatus] = mapped_column(
        _enum(ResolutionStatus), default=ResolutionStatus.PENDING, index=True
    )
    resolved_entity_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def candidate_refs(self) -> list[str]:
        return [candidate["entity_ref"] for candidate in self.candidates]
