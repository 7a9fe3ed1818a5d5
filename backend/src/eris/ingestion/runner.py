"""Ingestion session runner.

:class:`IngestionService` is the entry point used by the CLI: it creates
sessions and runs each one in its own asyncio task
(:class:`SessionWorker`). A worker drives one adapter page by page:

    stage page -> resolve + reconcile each record -> record_page (counters)

Stopping is cooperative. ``stop_session`` sets an event the worker checks
before fetching the next page, so a page that is being processed always
finishes and is counted before the session enters ``stopped``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID

from ..context import PipelineContext
from ..errors import (
    ConfigurationError,
    InvalidSessionTransition,
    SourceConnectionError,
    SourceError,
    UnrecoverableSourceError,
)
from ..logging import (
    get_context_logger,
    log_page_complete,
    log_record_outcome,
    log_session_complete,
    log_session_error,
    log_session_start,
)
from ..models.base import PersistenceStatus, SessionStatus
from ..models.records import NormalizedRecord, ReconcileResult, SessionSnapshot, SourcePage
from ..models.tables import ReviewCase
from ..resolution.linker import EntityLinker
from ..resolution.reconcile import RecordReconciler
from ..resolution.resolver import IdentityResolver, RegistrySnapshot
from ..resolution.review import ReviewQueue
from . import build_adapter
from .base import AdapterHandle, SourceAdapter, SourceConfig
from .events import OFFENDER_CREATED, REVIEW_CASE_CREATED, topic
from .run_log import SessionLogCapture
from .staging import StagingLedger
from .tracking import PageCounts, SessionTracker

AdapterFactory = Callable[[SourceConfig], SourceAdapter]


@dataclass
class SessionHandle:
    """A live session worker."""

    session_id: UUID
    task: "asyncio.Task[SessionSnapshot]"
    stop_event: asyncio.Event


class SessionWorker:
    """Runs one ingestion session to a terminal status."""

    def __init__(
        self,
        context: PipelineContext,
        session_id: UUID,
        config: SourceConfig,
        adapter_factory: AdapterFactory,
        resolver: IdentityResolver,
        stop_event: asyncio.Event,
        log_capture: SessionLogCapture,
    ):
        self.context = context
        self.session_id = session_id
        self.config = config
        self.adapter_factory = adapter_factory
        self.resolver = resolver
        self.stop_event = stop_event
        self.log_capture = log_capture

        database = context.database
        self.tracker = SessionTracker(database, context.events)
        self.linker = EntityLinker(database)
        self.review_queue = ReviewQueue(database, self.linker, context.events)
        self.reconciler = RecordReconciler(database, self.linker, self.review_queue)
        self.staging = StagingLedger(database)

        self.logger = get_context_logger(
            f"eris.ingestion.{config.source}",
            source=config.source,
            session_id=str(session_id),
        )
        self.handle: AdapterHandle | None = None
        self.snapshot: SessionSnapshot | None = None

    async def run(self) -> SessionSnapshot:
        """Run the session and store its terminal status.

        Returns:
            The final session snapshot
        """
        source = self.config.source
        session_ref = str(self.session_id)

        # Per-session log capture on the source logger
        source_logger = logging.getLogger(f"eris.ingestion.{source}")
        self.log_capture.start(self.session_id)
        handler = self.log_capture.handler(self.session_id)
        source_logger.addHandler(handler)

        started = time.monotonic()
        status, last_error = SessionStatus.FAILED, None
        try:
            status, last_error = await self._execute()
        except asyncio.CancelledError:
            status = SessionStatus.STOPPED
            self.logger.warning("Session task cancelled")
            raise
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
            log_session_error(source, session_ref, last_error)
            self.logger.exception("Ingestion failed")
        finally:
            if self.handle is not None:
                await self.handle.close()
            self.logger.info(f"Finishing session as {status.value}")
            source_logger.removeHandler(handler)
            log_output = self.log_capture.finish(self.session_id)
            self.snapshot = await self._finish(status, last_error, log_output)
            log_session_complete(
                source,
                session_ref,
                self.snapshot.status.value,
                self.snapshot.counters,
                time.monotonic() - started,
            )
        return self.snapshot

    async def _execute(self) -> tuple[SessionStatus, str | None]:
        config = self.config
        session_ref = str(self.session_id)

        try:
            adapter = self.adapter_factory(config)
            self.handle = await adapter.initialize(config)
            self.handle.bind(session_id=session_ref)
            await adapter.validate_connection(self.handle)
        except (ConfigurationError, SourceConnectionError) as e:
            log_session_error(config.source, session_ref, str(e))
            return SessionStatus.FAILED, str(e)

        if self.stop_event.is_set():
            self.logger.info("Stop requested before start")
            return SessionStatus.STOPPED, None

        await self.tracker.start(self.session_id)
        log_session_start(config.source, session_ref, config.strategy.value)

        try:
            total = await adapter.get_total_count(self.handle)
        except SourceError as e:
            self.logger.warning(f"Could not determine total record count: {e}")
            total = None
        if total is not None:
            self.logger.info(f"Source reports {total} records")

        try:
            return await self._process_pages(adapter, self.handle)
        except UnrecoverableSourceError as e:
            log_session_error(config.source, session_ref, str(e))
            return SessionStatus.FAILED, str(e)

    async def _process_pages(
        self, adapter: SourceAdapter, handle: AdapterHandle
    ) -> tuple[SessionStatus, str | None]:
        config = self.config
        pages = adapter.stream_pages(handle)
        consecutive_existing = 0
        consecutive_failures = 0

        try:
            while True:
                if self.stop_event.is_set():
                    self.logger.info("Stop requested; no further pages will be fetched")
                    return SessionStatus.STOPPED, None
                try:
                    page = await anext(pages)
                except StopAsyncIteration:
                    break

                if page.failure is not None:
                    consecutive_failures += 1
                    await self._record_failed_page(page)
                    limit = config.max_consecutive_page_failures
                    if limit is not None and consecutive_failures >= limit:
                        message = (
                            f"{consecutive_failures} consecutive page failures; "
                            f"last: {page.failure}"
                        )
                        self.logger.error(message)
                        return SessionStatus.FAILED, message
                    continue

                consecutive_failures = 0
                results = await self._process_page(page)

                for result in results:
                    if result.outcome == PersistenceStatus.EXISTING:
                        consecutive_existing += 1
                    elif result.outcome != PersistenceStatus.ERROR:
                        consecutive_existing = 0
                threshold = config.consecutive_existing_threshold
                if threshold is not None and consecutive_existing >= threshold:
                    self.logger.info(
                        f"{consecutive_existing} consecutive existing records; "
                        "source is caught up"
                    )
                    return SessionStatus.COMPLETED, None
        finally:
            await pages.aclose()

        return SessionStatus.COMPLETED, None

    async def _process_page(self, page: SourcePage) -> list[ReconcileResult]:
        """Persist every record of a page, then commit the page counters."""
        config = self.config
        async with self.context.database.session() as session:
            snapshot = await RegistrySnapshot.load(session)
        staged = await self.staging.stage_page(self.session_id, config.source, page)

        counts = PageCounts()
        scraped: list[dict[str, Any]] = []
        results: list[ReconcileResult] = []

        for item_error in page.item_errors:
            counts.add_error(f"{item_error.source_record_id}: {item_error.error}")
            scraped.append(
                {
                    "regulator_id": item_error.source_record_id,
                    "offender_name": None,
                    "outcome": PersistenceStatus.ERROR.value,
                }
            )

        for record in page.records:
            result = await self._process_record(record, staged.get(record.regulator_id), snapshot)
            results.append(result)
            counts.add(
                result.outcome,
                f"{record.regulator_id}: {result.error}" if result.error else None,
            )
            scraped.append(
                {
                    "regulator_id": record.regulator_id,
                    "offender_name": record.offender_name,
                    "outcome": result.outcome.value,
                }
            )

        await self.tracker.record_page(
            self.session_id, config.source, page.number, counts, scraped_items=scraped
        )
        log_page_complete(config.source, str(self.session_id), page.number, counts.as_dict())
        self.logger.info(
            f"Page {page.number}: {counts.found} found, {counts.created} created, "
            f"{counts.updated} updated, {counts.existing} existing, {counts.errors} errors"
        )
        return results

    async def _process_record(
        self,
        record: NormalizedRecord,
        staging_id: UUID | None,
        snapshot: RegistrySnapshot,
    ) -> ReconcileResult:
        try:
            # Stored records are diffed only; their identity was settled when created.
            if await self.reconciler.stored_id(record) is not None:
                result = await self.reconciler.apply_diff(record)
            else:
                result = await self._resolve_and_reconcile(record, staging_id, snapshot)
        except Exception as e:
            # Continue processing other records
            result = ReconcileResult(
                outcome=PersistenceStatus.ERROR, error=f"{type(e).__name__}: {e}"
            )
            self.logger.warning(
                f"FAILED: {record.regulator_id} ({record.offender_name}): {e}",
                extra={"regulator_id": record.regulator_id, "error_type": type(e).__name__},
            )

        if staging_id is not None:
            await self.staging.mark(staging_id, result)
        log_record_outcome(
            record.source,
            str(self.session_id),
            record.regulator_id,
            result.outcome.value,
            str(result.entity_ref) if result.entity_ref else None,
        )
        await self._publish_record(record, result)
        return result

    async def _resolve_and_reconcile(
        self,
        record: NormalizedRecord,
        staging_id: UUID | None,
        snapshot: RegistrySnapshot,
    ) -> ReconcileResult:
        resolution = await self.resolver.resolve(
            record.offender_name,
            record.offender_address,
            snapshot,
            postcode=record.offender_postcode,
            company_number=record.company_number,
        )
        return await self.reconciler.reconcile(
            record, resolution, staging_ref=staging_id, snapshot=snapshot
        )

    async def _record_failed_page(self, page: SourcePage) -> None:
        counts = PageCounts()
        counts.add_error(f"page {page.number}: {page.failure}")
        await self.tracker.record_page(self.session_id, self.config.source, page.number, counts)
        log_page_complete(self.config.source, str(self.session_id), page.number, counts.as_dict())

    async def _publish_record(self, record: NormalizedRecord, result: ReconcileResult) -> None:
        events = self.context.events
        if result.outcome in (PersistenceStatus.CREATED, PersistenceStatus.UPDATED):
            await events.publish(
                topic(record.record_type.value, result.outcome.value),
                session_id=self.session_id,
                entity_ref=result.record_id,
                data={
                    "source": record.source,
                    "regulator_id": record.regulator_id,
                    "offender_name": record.offender_name,
                    "offender_id": str(result.entity_ref) if result.entity_ref else None,
                    "link_status": result.link_status.value,
                    "changed_fields": result.changed_fields,
                },
            )
        if result.entity_created:
            await events.publish(
                OFFENDER_CREATED,
                session_id=self.session_id,
                entity_ref=result.entity_ref,
                data={"name": record.offender_name},
            )
        if result.review_case_id is not None:
            await events.publish(
                REVIEW_CASE_CREATED,
                session_id=self.session_id,
                entity_ref=result.review_case_id,
                data={"regulator_id": record.regulator_id, "offender_name": record.offender_name},
            )

    async def _finish(
        self, status: SessionStatus, last_error: str | None, log_output: str
    ) -> SessionSnapshot:
        try:
            return await self.tracker.finish(
                self.session_id, status, last_error=last_error, log_output=log_output
            )
        except InvalidSessionTransition as e:
            # Already terminal (e.g. stopped from outside while pending)
            self.logger.warning(str(e))
            return await self.tracker.get(self.session_id)


class IngestionService:
    """Starts, stops and inspects ingestion sessions."""

    def __init__(
        self,
        context: PipelineContext,
        adapter_factory: AdapterFactory | None = None,
        resolver: IdentityResolver | None = None,
    ):
        """Initialize the service.

        Args:
            context: Pipeline context (database, events, settings)
            adapter_factory: Builds an adapter for a config (tests inject
                adapters with a mock transport)
            resolver: Identity resolver (defaults to one built from settings)
        """
        self.context = context
        self.tracker = SessionTracker(context.database, context.events)
        self.linker = EntityLinker(context.database)
        self.review_queue = ReviewQueue(context.database, self.linker, context.events)
        self.resolver = resolver or IdentityResolver.from_settings(
            context.settings, registry_index=context.registry_index
        )
        self.adapter_factory = adapter_factory or (
            lambda config: build_adapter(config, settings=context.settings)
        )
        self.log_capture = SessionLogCapture()
        self._workers: dict[UUID, SessionHandle] = {}

    async def start_session(self, config: SourceConfig | dict[str, Any]) -> SessionSnapshot:
        """Create a ``pending`` session and start its worker task.

        Raises:
            ConfigurationError: If a raw config dict does not parse
        """
        if not isinstance(config, SourceConfig):
            config = SourceConfig.from_dict(config)
        snapshot = await self.tracker.create(
            config.source, config.strategy.value, config.range_params()
        )

        stop_event = asyncio.Event()
        worker = SessionWorker(
            self.context,
            snapshot.id,
            config,
            self.adapter_factory,
            self.resolver,
            stop_event,
            self.log_capture,
        )
        task = asyncio.create_task(worker.run(), name=f"eris-session-{snapshot.id}")
        self._workers[snapshot.id] = SessionHandle(snapshot.id, task, stop_event)
        task.add_done_callback(lambda _task, sid=snapshot.id: self._workers.pop(sid, None))
        return snapshot

    async def stop_session(self, session_id: UUID) -> SessionSnapshot:
        """Request a stop.

        A live worker stops before its next page fetch; a session with no
        live worker is moved to ``stopped`` directly. Terminal sessions are
        returned unchanged.

        Raises:
            SessionNotFound: If no such session exists
        """
        handle = self._workers.get(session_id)
        if handle is not None:
            handle.stop_event.set()
            return await self.tracker.get(session_id)

        current = await self.tracker.get(session_id)
        if current.status.is_terminal:
            return current
        try:
            return await self.tracker.finish(session_id, SessionStatus.STOPPED)
        except InvalidSessionTransition:
            return await self.tracker.get(session_id)

    async def get_session_status(self, session_id: UUID) -> SessionSnapshot:
        return await self.tracker.get(session_id)

    async def list_active_sessions(self) -> list[SessionSnapshot]:
        return await self.tracker.active()

    async def wait(self, session_id: UUID, timeout: float | None = None) -> SessionSnapshot:
        """Wait for a session's worker to finish, then return its snapshot."""
        handle = self._workers.get(session_id)
        if handle is not None:
            await asyncio.wait({handle.task}, timeout=timeout)
        return await self.tracker.get(session_id)

    def live_log(self, session_id: UUID, offset: int = 0) -> list[str] | None:
        """Log lines of a running session (None once it finished)."""
        return self.log_capture.live(session_id, offset)

    async def list_review_cases(self, limit: int = 50, offset: int = 0) -> tuple[list[ReviewCase], int]:
        return await self.review_queue.list_pending(limit=limit, offset=offset)

    async def resolve_review(
        self,
        case_id: UUID,
        chosen_entity_ref: str,
        resolved_by: str | None = None,
        notes: str | None = None,
    ) -> ReviewCase:
        return await self.review_queue.resolve(
            case_id, chosen_entity_ref, resolved_by=resolved_by, notes=notes
        )

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """Stop every live worker, cancelling those that do not stop in time."""
        handles = list(self._workers.values())
        for handle in handles:
            handle.stop_event.set()
        if not handles:
            return
        tasks = {handle.task for handle in handles}
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
