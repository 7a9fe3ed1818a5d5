"""Reconciliation of normalized records against stored state.

Each record is handled in its own unit of work and ends in exactly one
outcome:

- ``created``: no stored record with the same (source, regulator id)
- ``updated``: a stored record differs in at least one compared field
- ``existing``: a stored record with identical compared fields

Missing incoming values never clear stored ones. A record whose insert
loses a race against a concurrent session is re-read and diffed instead.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..db import Database
from ..errors import PersistenceConflict
from ..logging import get_logger
from ..models.base import ConfidenceTier, LinkStatus, PersistenceStatus
from ..models.records import NormalizedRecord, ReconcileResult, Resolution
from ..models.tables import EnforcementRecord
from .linker import EntityLinker, profile_of
from .resolver import RegistrySnapshot
from .review import ReviewQueue

logger = get_logger(__name__)


def diff_record(row: EnforcementRecord, record: NormalizedRecord) -> dict[str, Any]:
    """Fields of ``record`` whose non-empty value differs from ``row``."""
    changes: dict[str, Any] = {}
    for name, incoming in record.comparable_fields().items():
        if incoming is None:
            continue
        if getattr(row, name) != incoming:
            changes[name] = incoming
    return changes


class RecordReconciler:
    """Decides created / updated / existing for each record and links offenders."""

    def __init__(self, database: Database, linker: EntityLinker, review_queue: ReviewQueue):
        self.database = database
        self.linker = linker
        self.review_queue = review_queue

    async def reconcile(
        self,
        record: NormalizedRecord,
        resolution: Resolution,
        staging_ref: UUID | None = None,
        snapshot: RegistrySnapshot | None = None,
    ) -> ReconcileResult:
        """Persist one record according to its identity resolution.

        Raises:
            PersistenceConflict: If the record can neither be inserted nor re-read
        """
        if await self.stored_id(record) is None:
            try:
                return await self._create(record, resolution, staging_ref, snapshot)
            except IntegrityError:
                conflict = PersistenceConflict("enforcement_records", record.key)
                logger.info(
                    f"{conflict}; reconciling against the stored row",
                    extra={"regulator_id": record.regulator_id, "conflict_table": "enforcement_records"},
                )
        return await self.apply_diff(record)

    async def _create(
        self,
        record: NormalizedRecord,
        resolution: Resolution,
        staging_ref: UUID | None,
        snapshot: RegistrySnapshot | None,
    ) -> ReconcileResult:
        best = resolution.best
        entity_id: UUID | None = None
        entity_created = False
        link_status = LinkStatus.FINAL

        if resolution.tier == ConfidenceTier.LOW or best is None:
            offender, entity_created = await self.linker.get_or_create(
                record.offender_name,
                address=record.offender_address,
                postcode=record.offender_postcode,
                company_number=record.company_number,
                snapshot=snapshot,
            )
            entity_id = offender.id
        elif resolution.tier in (ConfidenceTier.EXACT, ConfidenceTier.HIGH):
            entity_id, entity_created = await self.linker.resolve_candidate(best, snapshot)
        else:
            # Medium: only an existing offender may carry a provisional link;
            # external candidates wait for the review decision.
            link_status = LinkStatus.PROVISIONAL
            if best.is_canonical:
                entity_id = UUID(best.entity_ref)

        if entity_id is None:
            link_status = LinkStatus.NONE

        review_case_id = None
        async with self.database.session() as session:
            row = EnforcementRecord(
                source=record.source,
                regulator_id=record.regulator_id,
                offender_id=entity_id,
                link_status=link_status,
                match_tier=resolution.tier,
                match_score=best.score if best is not None else None,
                **record.comparable_fields(),
            )
            session.add(row)
            await session.flush()

            if link_status == LinkStatus.FINAL:
                offender = await self.linker.refresh_stats(session, entity_id)
                if snapshot is not None and offender is not None:
                    snapshot.add(profile_of(offender))

            if resolution.tier == ConfidenceTier.MEDIUM:
                case = await self.review_queue.enqueue(
                    staging_ref,
                    record,
                    resolution.candidates,
                    enforcement_record_id=row.id,
                    session=session,
                )
                review_case_id = case.id
            record_id = row.id

        return ReconcileResult(
            outcome=PersistenceStatus.CREATED,
            record_id=record_id,
            entity_ref=entity_id,
            entity_created=entity_created,
            link_status=link_status,
            review_case_id=review_case_id,
        )

    async def stored_id(self, record: NormalizedRecord) -> UUID | None:
        """Id of the stored record with the same (source, regulator id), if any."""
        async with self.database.session() as session:
            return await session.scalar(
                select(EnforcementRecord.id).where(
                    EnforcementRecord.source == record.source,
                    EnforcementRecord.regulator_id == record.regulator_id,
                )
            )

    async def apply_diff(self, record: NormalizedRecord) -> ReconcileResult:
        """Diff ``record`` against its stored row: ``existing`` or ``updated``.

        Raises:
            PersistenceConflict: If no row is stored for the record
        """
        async with self.database.session() as session:
            row = await session.scalar(
                select(EnforcementRecord).where(
                    EnforcementRecord.source == record.source,
                    EnforcementRecord.regulator_id == record.regulator_id,
                )
            )
            if row is None:
                raise PersistenceConflict("enforcement_records", record.key)

            changes = diff_record(row, record)
            if not changes:
                return ReconcileResult(
                    outcome=PersistenceStatus.EXISTING,
                    record_id=row.id,
                    entity_ref=row.offender_id,
                    link_status=row.link_status,
                )

            for name, value in changes.items():
                setattr(row, name, value)
            await session.flush()
            if row.link_status == LinkStatus.FINAL and row.offender_id is not None:
                await self.linker.refresh_stats(session, row.offender_id)

            logger.debug(
                f"Updated {record.source}/{record.regulator_id}: {sorted(changes)}",
                extra={"regulator_id": record.regulator_id},
            )
            return ReconcileResult(
                outcome=PersistenceStatus.UPDATED,
                record_id=row.id,
                entity_ref=row.offender_id,
                link_status=row.link_status,
                changed_fields=sorted(changes),
            )
