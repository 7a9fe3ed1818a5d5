"""Canonical offender creation and record linking.

Offenders are created get-or-create style against the
``(normalized_name, postcode_key)`` unique constraint: a concurrent
session that wins the insert race is detected by the IntegrityError and
its row is re-read instead of creating a duplicate.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import Database
from ..errors import PersistenceConflict
from ..logging import get_logger
from ..models.base import LinkStatus, RecordType
from ..models.records import IdentityCandidate
from ..models.tables import EnforcementRecord, Offender
from .normalize import (
    clean_company_number,
    detect_business_type,
    extract_postcode,
    normalize_name,
    normalize_postcode,
    postcode_key,
)
from .resolver import EntityProfile, RegistrySnapshot

logger = get_logger(__name__)


def profile_of(offender: Offender) -> EntityProfile:
    return EntityProfile(
        id=offender.id,
        name=offender.name,
        normalized_name=offender.normalized_name,
        postcode=offender.postcode,
        company_number=offender.company_number,
        linked_records=offender.total_records or 0,
    )


class EntityLinker:
    """Creates canonical offenders and maintains record links and stats."""

    def __init__(self, database: Database):
        self.database = database

    async def get_or_create(
        self,
        name: str,
        *,
        address: str | None = None,
        postcode: str | None = None,
        company_number: str | None = None,
        snapshot: RegistrySnapshot | None = None,
    ) -> tuple[Offender, bool]:
        """Find or create the offender for ``name`` (+ postcode).

        Returns:
            (offender, created)
        """
        try:
            async with self.database.session() as session:
                offender, created = await self.find_or_add(
                    session, name, address=address, postcode=postcode, company_number=company_number
                )
        except IntegrityError:
            offender, created = await self._reread_after_conflict(
                name, address=address, postcode=postcode, company_number=company_number
            )
        if created:
            logger.info(
                f"Created offender {offender.id} ({name})",
                extra={"offender_id": str(offender.id), "normalized_name": offender.normalized_name},
            )
        if snapshot is not None:
            snapshot.add(profile_of(offender))
        return offender, created

    async def find_or_add(
        self,
        session: AsyncSession,
        name: str,
        *,
        address: str | None = None,
        postcode: str | None = None,
        company_number: str | None = None,
    ) -> tuple[Offender, bool]:
        """Find the offender in ``session`` or add and flush a new one.

        The insert is part of the caller's unit of work. A lost insert race
        raises IntegrityError on flush and rolls the whole unit back.

        Returns:
            (offender, created)
        """
        normalized = normalize_name(name)
        postcode = normalize_postcode(postcode) or extract_postcode(address)
        key = postcode_key(postcode)
        number = clean_company_number(company_number)

        offender = await self._find(session, normalized, key, number)
        if offender is not None:
            return offender, False

        offender = Offender(
            name=name,
            normalized_name=normalized,
            postcode_key=key,
            postcode=postcode,
            address=address,
            company_number=number,
            business_type=detect_business_type(name),
            agencies=[],
        )
        session.add(offender)
        await session.flush()
        return offender, True

    async def _reread_after_conflict(
        self,
        name: str,
        *,
        address: str | None,
        postcode: str | None,
        company_number: str | None,
    ) -> tuple[Offender, bool]:
        normalized = normalize_name(name)
        key = postcode_key(normalize_postcode(postcode) or extract_postcode(address))
        conflict = PersistenceConflict("offenders", (normalized, key))
        logger.info(f"{conflict}; re-reading", extra={"conflict_table": "offenders"})
        async with self.database.session() as session:
            offender = await self._find(session, normalized, key, clean_company_number(company_number))
        if offender is None:
            raise conflict
        return offender, False

    async def resolve_candidate(
        self, candidate: IdentityCandidate, snapshot: RegistrySnapshot | None = None
    ) -> tuple[UUID, bool]:
        """Canonical id for a candidate, creating it from external registry data."""
        if candidate.is_canonical:
            return UUID(candidate.entity_ref), False
        offender, created = await self.get_or_create(
            candidate.name,
            address=candidate.address,
            postcode=candidate.postcode,
            company_number=candidate.company_number,
            snapshot=snapshot,
        )
        return offender.id, created

    async def link(
        self,
        session: AsyncSession,
        record: EnforcementRecord,
        entity_id: UUID | None,
        status: LinkStatus,
    ) -> None:
        """Point ``record`` at ``entity_id`` and refresh affected stats."""
        previous = record.offender_id if record.link_status == LinkStatus.FINAL else None
        record.offender_id = entity_id
        record.link_status = status if entity_id is not None else LinkStatus.NONE
        await session.flush()

        touched = {previous}
        if record.link_status == LinkStatus.FINAL:
            touched.add(entity_id)
        for offender_id in touched - {None}:
            await self.refresh_stats(session, offender_id)

    async def refresh_stats(self, session: AsyncSession, entity_id: UUID) -> Offender | None:
        """Recompute an offender's aggregates from its finally-linked records."""
        await session.flush()
        linked = (
            EnforcementRecord.offender_id == entity_id,
            EnforcementRecord.link_status == LinkStatus.FINAL,
        )
        totals = (
            await session.execute(
                select(
                    func.count(EnforcementRecord.id),
                    func.coalesce(
                        func.sum(case((EnforcementRecord.record_type == RecordType.CASE, 1), else_=0)),
                        0,
                    ),
                    func.coalesce(
                        func.sum(case((EnforcementRecord.record_type == RecordType.NOTICE, 1), else_=0)),
                        0,
                    ),
                    func.sum(EnforcementRecord.fine),
                    func.min(EnforcementRecord.action_date),
                    func.max(EnforcementRecord.action_date),
                ).where(*linked)
            )
        ).one()
        agencies = (
            await session.scalars(
                select(EnforcementRecord.source).where(*linked).distinct().order_by(EnforcementRecord.source)
            )
        ).all()

        offender = await session.get(Offender, entity_id)
        if offender is None:
            return None
        offender.total_records = totals[0]
        offender.total_cases = int(totals[1])
        offender.total_notices = int(totals[2])
        offender.total_fines = Decimal(str(totals[3] or 0)).quantize(Decimal("0.01"))
        offender.first_action_date = totals[4]
        offender.last_action_date = totals[5]
        offender.agencies = list(agencies)
        return offender

    async def _find(
        self,
        session: AsyncSession,
        normalized: str,
        key: str,
        company_number: str | None,
    ) -> Offender | None:
        if company_number:
            offender = await session.scalar(
                select(Offender)
                .where(Offender.company_number == company_number)
                .order_by(Offender.created_at, Offender.id)
                .limit(1)
            )
            if offender is not None:
                return offender
        return await session.scalar(
            select(Offender).where(
                Offender.normalized_name == normalized,
                Offender.postcode_key == key,
            )
        )
