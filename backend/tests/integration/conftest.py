"""Fixtures for storage-backed pipeline tests."""

from datetime import date
from decimal import Decimal

import pytest

from eris.models.records import NormalizedRecord
from eris.resolution.linker import EntityLinker
from eris.resolution.reconcile import RecordReconciler
from eris.resolution.resolver import IdentityResolver, RegistrySnapshot
from eris.resolution.review import ReviewQueue


def make_record(regulator_id: str = "HSE-1", **overrides) -> NormalizedRecord:
    data = {
        "source": "hse",
        "regulator_id": regulator_id,
        "offender_name": "Acme Widgets Ltd",
        "offender_address": "1 Mill Lane, Leeds LS1 1AA",
        "offender_postcode": "LS1 1AA",
        "action_date": date(2024, 3, 1),
        "fine": Decimal("1000.00"),
        "result": "Guilty",
    }
    data.update(overrides)
    return NormalizedRecord(**data)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def linker(database) -> EntityLinker:
    return EntityLinker(database)


@pytest.fixture
def review_queue(database, linker, events) -> ReviewQueue:
    return ReviewQueue(database, linker, events)


@pytest.fixture
def reconciler(database, linker, review_queue) -> RecordReconciler:
    return RecordReconciler(database, linker, review_queue)


@pytest.fixture
def resolve(database):
    """Resolve a record against the stored registry."""

    async def run(record: NormalizedRecord, resolver: IdentityResolver | None = None):
        async with database.session() as session:
            snapshot = await RegistrySnapshot.load(session)
        return await (resolver or IdentityResolver()).resolve(
            record.offender_name,
            record.offender_address,
            snapshot,
            postcode=record.offender_postcode,
            company_number=record.company_number,
        )

    return run
