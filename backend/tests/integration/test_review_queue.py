"""Integration tests for the identity review queue."""

from uuid import uuid4

import pytest
from sqlalchemy import select

from eris.errors import ReviewCaseNotFound, ReviewResolutionError
from eris.ingestion.events import REVIEW_CASE_UPDATED
from eris.models.base import ConfidenceTier, LinkStatus, ResolutionStatus, SourceRegistry
from eris.models.records import IdentityCandidate, Resolution
from eris.models.tables import EnforcementRecord, Offender
from eris.resolution.review import ReviewQueue

pytestmark = pytest.mark.integration


def canonical(offender, score: float) -> IdentityCandidate:
    return IdentityCandidate(entity_ref=str(offender.id), name=offender.name, score=score)


def external(number: str, name: str, score: float) -> IdentityCandidate:
    return IdentityCandidate(
        entity_ref=f"companies_house:{number}",
        name=name,
        score=score,
        source_registry=SourceRegistry.COMPANIES_HOUSE,
        company_number=number,
        address="Fox's Marina, Ipswich, IP2 8SA",
        postcode="IP2 8SA",
    )


async def load(database, model, ident):
    async with database.session() as session:
        return await session.get(model, ident)


@pytest.fixture
def medium_record(reconciler, record_factory):
    """Reconcile a record with a medium-tier resolution and return its result."""

    async def run(candidates, regulator_id="HSE-1", name="Northern Yacht Co"):
        record = record_factory(
            regulator_id=regulator_id,
            offender_name=name,
            offender_address=None,
            offender_postcode=None,
        )
        resolution = Resolution(
            tier=ConfidenceTier.MEDIUM, normalized_name=name.lower(), candidates=candidates
        )
        return record, await reconciler.reconcile(record, resolution)

    return run


class TestEnqueue:
    """Tests for ReviewQueue.enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent_per_record(self, review_queue, linker, record_factory):
        first, _ = await linker.get_or_create("Northern Yachts Ltd")
        second, _ = await linker.get_or_create("Northern Yachting Ltd")
        record = record_factory()

        case = await review_queue.enqueue(None, record, [canonical(first, 0.7)])
        again = await review_queue.enqueue(
            None, record, [canonical(second, 0.8), canonical(first, 0.7)]
        )

        assert again.id == case.id
        assert again.candidate_refs() == [str(second.id), str(first.id)]
        assert again.best_score == 0.8
        cases, total = await review_queue.list_pending()
        assert total == 1

    @pytest.mark.asyncio
    async def test_enqueue_requires_candidates(self, review_queue, record_factory):
        with pytest.raises(ValueError):
            await review_queue.enqueue(None, record_factory(), [])

    @pytest.mark.asyncio
    async def test_resolved_case_is_not_reopened(self, review_queue, linker, medium_record):
        offender, _ = await linker.get_or_create("Northern Yachts Ltd")
        record, result = await medium_record([canonical(offender, 0.72)])
        await review_queue.resolve(result.review_case_id, str(offender.id))

        case = await review_queue.enqueue(None, record, [canonical(offender, 0.75)])

        assert case.id == result.review_case_id
        assert case.status == ResolutionStatus.RESOLVED
        assert case.best_score == 0.72

    @pytest.mark.asyncio
    async def test_list_pending_orders_by_score(self, review_queue, linker, record_factory):
        offender, _ = await linker.get_or_create("Northern Yachts Ltd")
        for index, score in enumerate([0.66, 0.81, 0.7]):
            await review_queue.enqueue(
                None, record_factory(regulator_id=f"HSE-{index}"), [canonical(offender, score)]
            )

        cases, total = await review_queue.list_pending(limit=2)

        assert total == 3
        assert [case.best_score for case in cases] == [0.81, 0.7]
        rest, _ = await review_queue.list_pending(limit=2, offset=2)
        assert [case.best_score for case in rest] == [0.66]


class TestResolve:
    """Tests for ReviewQueue.resolve."""

    @pytest.mark.asyncio
    async def test_resolve_to_canonical_candidate(
        self, database, events, review_queue, linker, medium_record
    ):
        offender, _ = await linker.get_or_create("Northern Yachts Ltd")
        _, result = await medium_record([canonical(offender, 0.72)])
        published = []
        events.subscribe(REVIEW_CASE_UPDATED, lambda event: published.append(event))

        case = await review_queue.resolve(
            result.review_case_id, str(offender.id), resolved_by="analyst", notes="same firm"
        )

        assert case.status == ResolutionStatus.RESOLVED
        assert case.resolved_entity_ref == str(offender.id)
        assert case.resolved_by == "analyst"
        assert case.resolved_at is not None

        row = await load(database, EnforcementRecord, result.record_id)
        assert row.link_status == LinkStatus.FINAL
        assert row.offender_id == offender.id
        assert (await load(database, Offender, offender.id)).total_records == 1
        assert len(published) == 1
        assert published[0].data["status"] == "resolved"

    @pytest.mark.asyncio
    async def test_resolve_to_external_candidate_creates_offender(
        self, database, review_queue, medium_record
    ):
        candidates = [
            external("02365189", "OYSTER YACHTS LIMITED", 0.8),
            external("SC123456", "OYSTER MARINE LIMITED", 0.7),
        ]
        _, result = await medium_record(candidates, name="Oyster Yachts")
        assert result.link_status == LinkStatus.NONE

        case = await review_queue.resolve(result.review_case_id, "companies_house:02365189")

        row = await load(database, EnforcementRecord, result.record_id)
        assert row.link_status == LinkStatus.FINAL
        offender = await load(database, Offender, row.offender_id)
        assert offender.company_number == "02365189"
        assert offender.postcode == "IP2 8SA"
        assert offender.total_records == 1
        assert case.resolved_entity_ref == str(offender.id)

    @pytest.mark.asyncio
    async def test_resolve_to_other_existing_offender(
        self, database, review_queue, linker, medium_record
    ):
        candidate, _ = await linker.get_or_create("Northern Yachts Ltd")
        chosen, _ = await linker.get_or_create("Northern Boats Ltd")
        _, result = await medium_record([canonical(candidate, 0.72)])

        await review_queue.resolve(result.review_case_id, str(chosen.id))

        row = await load(database, EnforcementRecord, result.record_id)
        assert row.offender_id == chosen.id
        assert (await load(database, Offender, candidate.id)).total_records == 0

    @pytest.mark.asyncio
    async def test_cannot_resolve_twice(self, review_queue, linker, medium_record):
        offender, _ = await linker.get_or_create("Northern Yachts Ltd")
        _, result = await medium_record([canonical(offender, 0.72)])
        await review_queue.resolve(result.review_case_id, str(offender.id))

        with pytest.raises(ReviewResolutionError):
            await review_queue.resolve(result.review_case_id, str(offender.id))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("choice", ["not-a-reference", str(uuid4())])
    async def test_unusable_choice(self, review_queue, linker, medium_record, choice):
        offender, _ = await linker.get_or_create("Northern Yachts Ltd")
        _, result = await medium_record([canonical(offender, 0.72)])

        with pytest.raises(ReviewResolutionError):
            await review_queue.resolve(result.review_case_id, choice)

        case = await review_queue.get(result.review_case_id)
        assert case.status == ResolutionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_case(self, review_queue):
        with pytest.raises(ReviewCaseNotFound):
            await review_queue.resolve(uuid4(), "anything")
        with pytest.raises(ReviewCaseNotFound):
            await review_queue.get(uuid4())

    @pytest.mark.asyncio
    async def test_losing_concurrent_resolve_creates_no_offender(
        self, database, review_queue, linker, medium_record, monkeypatch
    ):
        other, _ = await linker.get_or_create("Oyster Boats Ltd")
        _, result = await medium_record(
            [external("02365189", "OYSTER YACHTS LIMITED", 0.8)], name="Oyster Yachts"
        )
        rival = ReviewQueue(database, linker)
        apply_resolution = review_queue._apply_resolution

        async def rival_resolves_first(*args):
            await rival.resolve(result.review_case_id, str(other.id))
            return await apply_resolution(*args)

        monkeypatch.setattr(review_queue, "_apply_resolution", rival_resolves_first)

        with pytest.raises(ReviewResolutionError):
            await review_queue.resolve(result.review_case_id, "companies_house:02365189")

        async with database.session() as session:
            offenders = list(await session.scalars(select(Offender)))
        assert [offender.id for offender in offenders] == [other.id]
        case = await review_queue.get(result.review_case_id)
        assert case.resolved_entity_ref == str(other.id)
        row = await load(database, EnforcementRecord, result.record_id)
        assert row.offender_id == other.id
