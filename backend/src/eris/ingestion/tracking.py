"""Ingestion session tracking for ERIS.

Owns the session state machine and counters. Every status change is a
guarded ``UPDATE ... WHERE status IN (<allowed sources>)`` so terminal
sessions cannot be modified, and counters only move in ``record_page``,
together with that page's processing log entry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update

from ..db import Database
from ..errors import InvalidSessionTransition, SessionNotFound
from ..logging import get_logger
from ..models.base import PersistenceStatus, SessionStatus, allowed_sources
from ..models.records import SessionSnapshot
from ..models.tables import IngestionSession, ProcessingLog
from .events import PROCESSING_LOG_CREATED, SESSION_UPDATED, ProgressEventBus

logger = get_logger(__name__)


@dataclass
class PageCounts:
    """Per-page counters; ``found`` always equals the sum of the rest."""

    created: int = 0
    updated: int = 0
    existing: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    @property
    def found(self) -> int:
        return self.created + self.updated + self.existing + self.errors

    def add(self, outcome: PersistenceStatus, error: str | None = None) -> None:
        if outcome == PersistenceStatus.CREATED:
            self.created += 1
        elif outcome == PersistenceStatus.UPDATED:
            self.updated += 1
        elif outcome == PersistenceStatus.EXISTING:
            self.existing += 1
        elif outcome == PersistenceStatus.ERROR:
            self.add_error(error or "unknown error")
        else:
            raise ValueError(f"{outcome} is not a reconciliation outcome")

    def add_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)

    def as_dict(self) -> dict[str, int]:
        return {
            "found": self.found,
            "created": self.created,
            "updated": self.updated,
            "existing": self.existing,
            "errors": self.errors,
        }


class SessionTracker:
    """Service for tracking ingestion sessions."""

    def __init__(self, database: Database, events: ProgressEventBus | None = None):
        self.database = database
        self.events = events

    async def create(
        self, source: str, strategy: str, range_params: dict[str, Any] | None = None
    ) -> SessionSnapshot:
        """Create a new session in ``pending``."""
        async with self.database.session() as session:
            row = IngestionSession(
                source=source,
                strategy=strategy,
                range_params=range_params or {},
                status=SessionStatus.PENDING,
            )
            session.add(row)
            await session.flush()
            snapshot = SessionSnapshot.model_validate(row)

        logger.info(
            f"Created ingestion session {snapshot.id} for {source}",
            extra={"session_id": str(snapshot.id), "source": source},
        )
        await self._publish(snapshot)
        return snapshot

    async def start(self, session_id: UUID) -> SessionSnapshot:
        """pending -> running."""
        return await self._transition(
            session_id,
            SessionStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )

    async def finish(
        self,
        session_id: UUID,
        status: SessionStatus,
        last_error: str | None = None,
        log_output: str | None = None,
    ) -> SessionSnapshot:
        """Move a session into a terminal status."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        values: dict[str, Any] = {"completed_at": datetime.now(timezone.utc)}
        if last_error is not None:
            values["last_error"] = last_error
        if log_output is not None:
            values["log_output"] = log_output
        return await self._transition(session_id, status, **values)

    async def record_page(
        self,
        session_id: UUID,
        source: str,
        page: int,
        counts: PageCounts,
        scraped_items: list[dict[str, Any]] | None = None,
    ) -> SessionSnapshot:
        """Commit a page's counters and its processing log in one transaction.

        Only allowed while the session is ``running``; must be called after
        the page's records were persisted.
        """
        async with self.database.session() as session:
            result = await session.execute(
                update(IngestionSession)
                .where(
                    IngestionSession.id == session_id,
                    IngestionSession.status == SessionStatus.RUNNING,
                )
                .values(
                    found=IngestionSession.found + counts.found,
                    created=IngestionSession.created + counts.created,
                    updated=IngestionSession.updated + counts.updated,
                    existing=IngestionSession.existing + counts.existing,
                    errors=IngestionSession.errors + counts.errors,
                    current_page=page,
                    pages_processed=IngestionSession.pages_processed + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._load(session, session_id)
                raise InvalidSessionTransition(session_id, current.status.value, "record_page")

            log = ProcessingLog(
                session_id=session_id,
                source=source,
                page=page,
                items_found=counts.found,
                items_created=counts.created,
                items_updated=counts.updated,
                items_existing=counts.existing,
                items_failed=counts.errors,
                errors=list(counts.error_messages),
                scraped_items=scraped_items or [],
            )
            session.add(log)
            await session.flush()
            log_id = log.id
            snapshot = SessionSnapshot.model_validate(await self._load(session, session_id))

        if self.events is not None:
            await self.events.publish(
                PROCESSING_LOG_CREATED,
                session_id=session_id,
                entity_ref=log_id,
                data={"page": page, **counts.as_dict(), "errors_list": counts.error_messages},
            )
        await self._publish(snapshot)
        return snapshot

    async def get(self, session_id: UUID) -> SessionSnapshot:
        """Get a session snapshot.

        Raises:
            SessionNotFound: If no such session exists
        """
        async with self.database.session() as session:
            return SessionSnapshot.model_validate(await self._load(session, session_id))

    async def active(self) -> list[SessionSnapshot]:
        """Sessions in ``pending`` or ``running``, oldest first."""
        async with self.database.session() as session:
            result = await session.scalars(
                select(IngestionSession)
                .where(
                    IngestionSession.status.in_(
                        [SessionStatus.PENDING, SessionStatus.RUNNING]
                    )
                )
                .order_by(IngestionSession.created_at, IngestionSession.id)
            )
            return [SessionSnapshot.model_validate(row) for row in result]

    async def logs_for(self, session_id: UUID) -> list[ProcessingLog]:
        """Processing log entries of a session, in page order."""
        async with self.database.session() as session:
            result = await session.scalars(
                select(ProcessingLog)
                .where(ProcessingLog.session_id == session_id)
                .order_by(ProcessingLog.created_at, ProcessingLog.page)
            )
            return list(result)

    async def log_output(self, session_id: UUID) -> str | None:
        """Captured log text of a finished session."""
        async with self.database.session() as session:
            row = await self._load(session, session_id)
            return row.log_output

    async def _transition(
        self, session_id: UUID, target: SessionStatus, **values: Any
    ) -> SessionSnapshot:
        sources = allowed_sources(target)
        async with self.database.session() as session:
            result = await session.execute(
                update(IngestionSession)
                .where(
                    IngestionSession.id == session_id,
                    IngestionSession.status.in_(list(sources)),
                )
                .values(status=target, updated_at=datetime.now(timezone.utc), **values)
                .execution_options(synchronize_session=False)
            )
            current = await self._load(session, session_id)
            if result.rowcount == 0:
                raise InvalidSessionTransition(session_id, current.status.value, target.value)
            snapshot = SessionSnapshot.model_validate(current)

        logger.info(
            f"Session {session_id} -> {target.value}",
            extra={"session_id": str(session_id), "status": target.value},
        )
        await self._publish(snapshot)
        return snapshot

    async def _load(self, session, session_id: UUID) -> IngestionSession:
        row = await session.get(IngestionSession, session_id, populate_existing=True)
        if row is None:
            raise SessionNotFound(session_id)
        return row

    async def _publish(self, snapshot: SessionSnapshot) -> None:
        if self.events is not None:
            await self.events.publish(
                SESSION_UPDATED,
                session_id=snapshot.id,
                entity_ref=snapshot.id,
                data=snapshot.model_dump(mode="json"),
            )
