"""Transient (non-ORM) shapes passed between pipeline stages."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import (
    ConfidenceTier,
    LinkStatus,
    PersistenceStatus,
    RecordType,
    SessionStatus,
    SourceRegistry,
)

# Fields compared when deciding between ``existing`` and ``updated``.
DIFF_FIELDS = (
    "record_type",
    "offender_name",
    "offender_address",
    "offender_postcode",
    "company_number",
    "action_date",
    "fine",
    "costs",
    "result",
    "description",
    "legislation",
    "url",
)


class NormalizedRecord(BaseModel):
    """One enforcement record in source-independent form."""

    source: str
    regulator_id: str
    record_type: RecordType = RecordType.CASE
    offender_name: str
    offender_address: str | None = None
    offender_postcode: str | None = None
    company_number: str | None = None
    action_date: date | None = None
    fine: Decimal | None = None
    costs: Decimal | None = None
    result: str | None = None
    description: str | None = None
    legislation: str | None = None
    url: str | None = None
    page: int = 1
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True, repr=False)

    @field_validator("regulator_id", "offender_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @property
    def key(self) -> tuple[str, str]:
        """Unique record key: (source, regulator id)."""
        return (self.source, self.regulator_id)

    def comparable_fields(self) -> dict[str, Any]:
        """Values of the fields that participate in the update diff."""
        return {name: getattr(self, name) for name in DIFF_FIELDS}


class ItemError(BaseModel):
    """A single item that could not be fetched or normalized."""

    source_record_id: str
    error: str


@dataclass
class SourcePage:
    """One page (or batch) handed from an adapter to the pipeline.

    ``failure`` is set when the page itself could not be fetched; the page
    then carries no records.
    """

    number: int
    records: list[NormalizedRecord] = field(default_factory=list)
    item_errors: list[ItemError] = field(default_factory=list)
    failure: Exception | None = None

    @property
    def found(self) -> int:
        if self.failure is not None:
            return 1
        return len(self.records) + len(self.item_errors)


class IdentityCandidate(BaseModel):
    """A proposed match for an offender name. Never persisted on its own."""

    entity_ref: str
    name: str
    score: float = Field(ge=0.0, le=1.0)
    source_registry: SourceRegistry = SourceRegistry.CANONICAL
    linked_records: int = 0
    company_number: str | None = None
    address: str | None = None
    postcode: str | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_canonical(self) -> bool:
        return self.source_registry == SourceRegistry.CANONICAL

    def summary(self) -> dict[str, Any]:
        """Shape stored on a review case."""
        return {
            "entity_ref": self.entity_ref,
            "name": self.name,
            "score": round(self.score, 4),
            "source_registry": self.source_registry.value,
            "company_number": self.company_number,
            "address": self.address,
            "postcode": self.postcode,
        }


class Resolution(BaseModel):
    """Outcome of identity resolution for one offender name."""

    tier: ConfidenceTier
    normalized_name: str
    candidates: list[IdentityCandidate] = Field(default_factory=list)

    @property
    def best(self) -> IdentityCandidate | None:
        return self.candidates[0] if self.candidates else None


class ReconcileResult(BaseModel):
    """What the reconciler did with one record."""

    outcome: PersistenceStatus
    record_id: UUID | None = None
    entity_ref: UUID | None = None
    entity_created: bool = False
    link_status: LinkStatus = LinkStatus.NONE
    review_case_id: UUID | None = None
    changed_fields: list[str] = Field(default_factory=list)
    error: str | None = None


class SessionSnapshot(BaseModel):
    """Read-only view of an ingestion session."""

    id: UUID
    source: str
    strategy: str
    status: SessionStatus
    range_params: dict[str, Any] = Field(default_factory=dict)
    found: int = 0
    created: int = 0
    updated: int = 0
    existing: int = 0
    errors: int = 0
    current_page: int | None = None
    pages_processed: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def counters(self) -> dict[str, int]:
        return {
            "found": self.found,
            "created": self.created,
            "updated": self.updated,
            "existing": self.existing,
            "errors": self.errors,
        }

    @property
    def is_balanced(self) -> bool:
        """found == created + updated + existing + errors."""
        return self.found == self.created + self.updated + self.existing + self.errors
