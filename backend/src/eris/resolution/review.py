"""Review queue for ambiguous identity matches.

A medium-confidence record is persisted with a provisional offender link
and one review case listing its candidates. A human decision
(:meth:`ReviewQueue.resolve`) promotes the link to final.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import Database
from ..errors import ReviewCaseNotFound, ReviewResolutionError
from ..ingestion.events import REVIEW_CASE_UPDATED
from ..logging import get_logger
from ..models.base import LinkStatus, ResolutionStatus, SourceRegistry
from ..models.records import IdentityCandidate, NormalizedRecord
from ..models.tables import EnforcementRecord, Offender, ReviewCase
from .linker import EntityLinker

logger = get_logger(__name__)


class ReviewQueue:
    """Queue of review cases, one per ambiguous record.

    Manages the lifecycle of review cases:
    - Enqueue (idempotent per record) from the reconciler
    - List pending cases for reviewers
    - Resolve a case to a chosen offender, finalizing the record link
    """

    def __init__(self, database: Database, linker: EntityLinker, events=None):
        """Initialize the queue.

        Args:
            database: Database handle
            linker: Entity linker used to promote provisional links
            events: Optional ProgressEventBus for review_case:updated events
        """
        self.database = database
        self.linker = linker
        self.events = events

    async def enqueue(
        self,
        staging_ref: UUID | None,
        record: NormalizedRecord,
        candidates: list[IdentityCandidate],
        enforcement_record_id: UUID | None = None,
        session: AsyncSession | None = None,
    ) -> ReviewCase:
        """Create or replace the pending review case for ``record``.

        A pending case for the same record is updated in place; a resolved
        case is returned untouched.

        Args:
            staging_ref: Staging record that produced the ambiguity
            record: The ambiguous record
            candidates: Ranked identity candidates (at least one)
            enforcement_record_id: Persisted record carrying the provisional link
            session: Join an existing unit of work instead of opening one
        """
        if not candidates:
            raise ValueError("A review case needs at least one candidate")
        if session is not None:
            return await self._enqueue(session, staging_ref, record, candidates, enforcement_record_id)
        async with self.database.session() as own:
            return await self._enqueue(own, staging_ref, record, candidates, enforcement_record_id)

    async def _enqueue(
        self,
        session: AsyncSession,
        staging_ref: UUID | None,
        record: NormalizedRecord,
        candidates: list[IdentityCandidate],
        enforcement_record_id: UUID | None,
    ) -> ReviewCase:
        summaries = [candidate.summary() for candidate in candidates]
        best_score = max(candidate.score for candidate in candidates)

        case = await session.scalar(
            select(ReviewCase).where(
                ReviewCase.source == record.source,
                ReviewCase.regulator_id == record.regulator_id,
            )
        )
        if case is None:
            case = ReviewCase(
                source=record.source,
                regulator_id=record.regulator_id,
                staging_record_id=staging_ref,
                enforcement_record_id=enforcement_record_id,
                offender_name=record.offender_name,
                candidates=summaries,
                best_score=best_score,
                status=ResolutionStatus.PENDING,
            )
            session.add(case)
            await session.flush()
            logger.info(
                f"Queued review case {case.id} for {record.offender_name} "
                f"({len(summaries)} candidates)",
                extra={"review_case_id": str(case.id), "regulator_id": record.regulator_id},
            )
            return case

        if case.status == ResolutionStatus.RESOLVED:
            return case

        case.candidates = summaries
        case.best_score = best_score
        case.offender_name = record.offender_name
        case.staging_record_id = staging_ref
        if enforcement_record_id is not None:
            case.enforcement_record_id = enforcement_record_id
        await session.flush()
        return case

    async def get(self, case_id: UUID) -> ReviewCase:
        async with self.database.session() as session:
            case = await session.get(ReviewCase, case_id)
            if case is None:
                raise ReviewCaseNotFound(case_id)
            return case

    async def list_pending(self, limit: int = 50, offset: int = 0) -> tuple[list[ReviewCase], int]:
        """Pending cases, best score first.

        Returns:
            (cases, total pending count)
        """
        pending = ReviewCase.status == ResolutionStatus.PENDING
        async with self.database.session() as session:
            total = await session.scalar(select(func.count(ReviewCase.id)).where(pending))
            result = await session.scalars(
                select(ReviewCase)
                .where(pending)
                .order_by(ReviewCase.best_score.desc(), ReviewCase.created_at, ReviewCase.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result), total or 0

    async def resolve(
        self,
        case_id: UUID,
        chosen_entity_ref: str,
        resolved_by: str | None = None,
        notes: str | None = None,
    ) -> ReviewCase:
        """Resolve a pending case to one offender and finalize the record link.

        ``chosen_entity_ref`` is one of the case's candidate references or
        the id of an existing offender. Choosing an external registry
        candidate creates (or finds) the offender for that company.

        Raises:
            ReviewCaseNotFound: If the case does not exist
            ReviewResolutionError: If the case is already resolved or the
                chosen reference cannot be used
        """
        async with self.database.session() as session:
            case = await session.get(ReviewCase, case_id)
            if case is None:
                raise ReviewCaseNotFound(case_id)
            if case.status == ResolutionStatus.RESOLVED:
                raise ReviewResolutionError(f"Review case {case_id} is already resolved")
            candidate = next(
                (c for c in case.candidates if c.get("entity_ref") == chosen_entity_ref),
                None,
            )

        external = (
            candidate is not None
            and candidate.get("source_registry") != SourceRegistry.CANONICAL.value
        )
        entity_id = None if external else await self._existing_offender(case_id, chosen_entity_ref)

        try:
            resolved, entity_id = await self._apply_resolution(
                case_id, entity_id, candidate, resolved_by, notes
            )
        except IntegrityError:
            # Offender inserted by a concurrent session; the retry finds it.
            logger.info(f"Offender for review case {case_id} created concurrently; retrying")
            resolved, entity_id = await self._apply_resolution(
                case_id, entity_id, candidate, resolved_by, notes
            )

        logger.info(
            f"Resolved review case {case_id} -> offender {entity_id}",
            extra={"review_case_id": str(case_id), "offender_id": str(entity_id)},
        )
        if self.events is not None:
            await self.events.publish(
                REVIEW_CASE_UPDATED,
                entity_ref=case_id,
                data={"status": resolved.status.value, "resolved_entity_ref": str(entity_id)},
            )
        return resolved

    async def _apply_resolution(
        self,
        case_id: UUID,
        entity_id: UUID | None,
        candidate: dict[str, Any] | None,
        resolved_by: str | None,
        notes: str | None,
    ) -> tuple[ReviewCase, UUID]:
        """Claim the pending case, then create the chosen offender and link its record.

        One unit of work: losing the claim leaves no offender behind.
        """
        async with self.database.session() as session:
            result = await session.execute(
                update(ReviewCase)
                .where(ReviewCase.id == case_id, ReviewCase.status == ResolutionStatus.PENDING)
                .values(
                    status=ResolutionStatus.RESOLVED,
                    resolved_at=datetime.now(timezone.utc),
                    resolved_by=resolved_by,
                    notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ReviewResolutionError(f"Review case {case_id} was resolved concurrently")

            if entity_id is None:
                offender, _ = await self.linker.find_or_add(
                    session,
                    candidate["name"],
                    address=candidate.get("address"),
                    postcode=candidate.get("postcode"),
                    company_number=candidate.get("company_number"),
                )
                entity_id = offender.id

            case = await session.get(ReviewCase, case_id, populate_existing=True)
            case.resolved_entity_ref = str(entity_id)
            if case.enforcement_record_id is not None:
                record = await session.get(EnforcementRecord, case.enforcement_record_id)
                if record is not None:
                    await self.linker.link(session, record, entity_id, LinkStatus.FINAL)
            await session.flush()
        return case, entity_id

    async def _existing_offender(self, case_id: UUID, chosen_ref: str) -> UUID:
        try:
            entity_id = UUID(chosen_ref)
        except ValueError:
            raise ReviewResolutionError(
                f"{chosen_ref!r} is neither a candidate of case {case_id} nor an offender id"
            ) from None

        async with self.database.session() as session:
            if await session.get(Offender, entity_id) is None:
                raise ReviewResolutionError(f"Offender {entity_id} does not exist")
        return entity_id
