"""Staging ledger for in-flight records.

Every fetched record (and every item that failed to fetch or normalize)
gets one ``staging_records`` row per session and page, so a session can
be audited record by record after it finishes.
"""

from uuid import UUID

from sqlalchemy import select, update

from ..db import Database
from ..models.base import PersistenceStatus, ProcessingStatus
from ..models.records import ReconcileResult, SourcePage
from ..models.tables import StagingRecord


class StagingLedger:
    """Writes and updates staging rows for one or more sessions."""

    def __init__(self, database: Database):
        self.database = database

    async def stage_page(self, session_id: UUID, source: str, page: SourcePage) -> dict[str, UUID]:
        """Stage a page's records and item errors.

        Rows already staged for this session and page are reused.

        Returns:
            Mapping of source record id to staging row id
        """
        async with self.database.session() as session:
            result = await session.execute(
                select(StagingRecord.source_record_id, StagingRecord.id).where(
                    StagingRecord.session_id == session_id,
                    StagingRecord.page == page.number,
                )
            )
            staged: dict[str, UUID] = {row.source_record_id: row.id for row in result}

            rows: list[StagingRecord] = []
            pending: set[str] = set()
            for record in page.records:
                if record.regulator_id in staged or record.regulator_id in pending:
                    continue
                row = StagingRecord(
                    session_id=session_id,
                    source=source,
                    source_record_id=record.regulator_id,
                    page=page.number,
                    offender_name=record.offender_name,
                    processing_status=ProcessingStatus.FETCHED,
                    persistence_status=PersistenceStatus.PENDING,
                )
                rows.append(row)
                pending.add(record.regulator_id)
            for item_error in page.item_errors:
                if item_error.source_record_id in staged or item_error.source_record_id in pending:
                    continue
                row = StagingRecord(
                    session_id=session_id,
                    source=source,
                    source_record_id=item_error.source_record_id,
                    page=page.number,
                    processing_status=ProcessingStatus.ERROR,
                    persistence_status=PersistenceStatus.ERROR,
                    error=item_error.error,
                )
                rows.append(row)
                pending.add(item_error.source_record_id)

            session.add_all(rows)
            await session.flush()
            for row in rows:
                staged[row.source_record_id] = row.id
        return staged

    async def mark(self, staging_id: UUID, result: ReconcileResult) -> None:
        """Record the reconciliation outcome on a staging row."""
        failed = result.outcome == PersistenceStatus.ERROR
        async with self.database.session() as session:
            await session.execute(
                update(StagingRecord)
                .where(StagingRecord.id == staging_id)
                .values(
                    processing_status=ProcessingStatus.ERROR if failed else ProcessingStatus.RECONCILED,
                    persistence_status=result.outcome,
                    enforcement_record_id=result.record_id,
                    error=result.error,
                )
                .execution_options(synchronize_session=False)
            )
