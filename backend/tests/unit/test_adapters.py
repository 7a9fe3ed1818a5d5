"""Unit tests for the cursor-paginated and range+detail source adapters."""

import httpx
import pytest

from eris.errors import (
    ConfigurationError,
    PageFetchFailed,
    SourceConnectionError,
    UnrecoverableSourceError,
)
from eris.ingestion import (
    CursorPaginatedAdapter,
    RangeDetailAdapter,
    SourceConfig,
    build_adapter,
)
from eris.models.base import FetchStrategy


async def collect(adapter, config):
    handle = await adapter.initialize(config)
    try:
        return [page async for page in adapter.stream_pages(handle)]
    finally:
        await handle.close()


def cursor_pages(item_factory, pages: int, per_page: int) -> list[list[dict]]:
    return [
        [item_factory(p * per_page + i) for i in range(per_page)] for p in range(pages)
    ]


# =========================
# Configuration
# =========================


class TestConfiguration:
    """Tests for config parsing and adapter selection."""

    def test_build_adapter_by_strategy(self, settings, cursor_config):
        cursor = build_adapter(SourceConfig.from_dict(cursor_config()), settings=settings)
        assert isinstance(cursor, CursorPaginatedAdapter)

        ranged = build_adapter(
            SourceConfig.from_dict(cursor_config(strategy="range_detail")), settings=settings
        )
        assert isinstance(ranged, RangeDetailAdapter)
        assert ranged.strategy == FetchStrategy.RANGE_DETAIL

    def test_invalid_config_raises_configuration_error(self, cursor_config):
        with pytest.raises(ConfigurationError):
            SourceConfig.from_dict(cursor_config(page_size=0))
        with pytest.raises(ConfigurationError):
            SourceConfig.from_dict(cursor_config(strategy="carrier_pigeon"))

    def test_credentials_hidden_from_range_params(self, cursor_config):
        config = SourceConfig.from_dict(cursor_config(credentials={"api_key": "secret"}))
        assert "secret" not in repr(config.credentials)
        assert "credentials" not in config.range_params()
        assert config.range_params()["cursor_mode"] == "page"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"endpoint": "ftp://example.test/cases"},
            {"field_map": {"colour": "colour"}},
            {"cursor_mode": "token", "start_page": 2},
            {"sort": [{"direction": "desc"}]},
        ],
    )
    async def test_initialize_rejects_bad_cursor_config(self, settings, cursor_config, overrides):
        adapter = CursorPaginatedAdapter(settings=settings)
        with pytest.raises(ConfigurationError):
            await adapter.initialize(SourceConfig.from_dict(cursor_config(**overrides)))

    @pytest.mark.asyncio
    async def test_initialize_rejects_strategy_mismatch(self, settings, cursor_config):
        adapter = RangeDetailAdapter(settings=settings)
        with pytest.raises(ConfigurationError):
            await adapter.initialize(SourceConfig.from_dict(cursor_config()))


# =========================
# Cursor pagination
# =========================


class TestCursorPaginatedAdapter:
    """Tests for CursorPaginatedAdapter."""

    @pytest.mark.asyncio
    async def test_token_cursor_follows_offsets(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5), mode="token")
        config = SourceConfig.from_dict(cursor_config(cursor_mode="token", page_size=5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert [page.number for page in pages] == [1, 2, 3]
        assert sum(len(page.records) for page in pages) == 15
        assert source.fetched_pages == [1, 2, 3]
        assert "offset" not in source.requests[0].url.params
        assert source.requests[1].url.params["offset"] == "p2"

    @pytest.mark.asyncio
    async def test_numbered_pages_stop_at_empty_page(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        config = SourceConfig.from_dict(cursor_config(page_size=5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert [page.number for page in pages] == [1, 2, 3]
        assert source.fetched_pages == [1, 2, 3, 4]
        assert pages[0].records[0].regulator_id == "HSE-0000"
        assert pages[2].records[-1].regulator_id == "HSE-0014"

    @pytest.mark.asyncio
    async def test_request_shape(self, settings, item_factory, cursor_source, cursor_config):
        source = cursor_source(cursor_pages(item_factory, 1, 2))
        config = SourceConfig.from_dict(
            cursor_config(view="Grid", sort=[{"field": "date", "direction": "desc"}])
        )
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        await collect(adapter, config)

        request = source.requests[0]
        assert request.url.path == "/v0/app/cases"
        assert request.url.params["view"] == "Grid"
        assert request.url.params["sort[0][field]"] == "date"
        assert request.url.params["sort[0][direction]"] == "desc"
        assert request.url.params["pageSize"] == "20"

    @pytest.mark.asyncio
    async def test_max_pages(self, settings, item_factory, cursor_source, cursor_config):
        source = cursor_source(cursor_pages(item_factory, 5, 5))
        config = SourceConfig.from_dict(cursor_config(page_size=5, max_pages=2))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert len(pages) == 2
        assert source.fetched_pages == [1, 2]

    @pytest.mark.asyncio
    async def test_max_records_trims_last_page(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 5, 5))
        config = SourceConfig.from_dict(cursor_config(page_size=5, max_records=7))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert [len(page.records) for page in pages] == [5, 2]
        assert source.fetched_pages == [1, 2]

    @pytest.mark.asyncio
    async def test_start_page(self, settings, item_factory, cursor_source, cursor_config):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        config = SourceConfig.from_dict(cursor_config(page_size=5, start_page=2))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert [page.number for page in pages] == [2, 3]

    @pytest.mark.asyncio
    async def test_failed_numbered_page_is_yielded_and_skipped(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        source.statuses[2] = 503
        config = SourceConfig.from_dict(cursor_config(page_size=5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert [page.number for page in pages] == [1, 2, 3]
        failed = pages[1]
        assert isinstance(failed.failure, PageFetchFailed)
        assert not failed.failure.fatal
        assert failed.records == []
        assert failed.found == 1
        # one retry for the failed page
        assert source.fetched_pages.count(2) == 2

    @pytest.mark.asyncio
    async def test_failed_token_page_ends_stream(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5), mode="token")
        source.statuses[2] = 502
        config = SourceConfig.from_dict(cursor_config(cursor_mode="token", page_size=5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        assert [page.number for page in pages] == [1, 2]
        assert pages[1].failure is not None
        assert 3 not in source.fetched_pages

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        source.statuses[2] = 404
        config = SourceConfig.from_dict(cursor_config(page_size=5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        with pytest.raises(UnrecoverableSourceError) as exc_info:
            await collect(adapter, config)

        assert exc_info.value.fatal
        assert exc_info.value.page == 2

    @pytest.mark.asyncio
    async def test_malformed_response_is_fatal(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        source.malformed.add(2)
        config = SourceConfig.from_dict(cursor_config(page_size=5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        with pytest.raises(UnrecoverableSourceError):
            await collect(adapter, config)

    @pytest.mark.asyncio
    async def test_bad_items_become_item_errors(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        items = [item_factory(1), "not-an-object", {"id": "HSE-9999"}, item_factory(2)]
        source = cursor_source([items])
        config = SourceConfig.from_dict(cursor_config())
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, config)

        page = pages[0]
        assert [r.regulator_id for r in page.records] == ["HSE-0001", "HSE-0002"]
        assert [e.source_record_id for e in page.item_errors] == ["page-1-item-1", "HSE-9999"]
        assert page.found == 4

    @pytest.mark.asyncio
    async def test_airtable_fields_are_flattened(
        self, settings, cursor_source, cursor_config
    ):
        items = [{"id": "rec1", "fields": {"offender_name": "Acme Widgets Ltd"}}]
        source = cursor_source([items])
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())

        pages = await collect(adapter, SourceConfig.from_dict(cursor_config()))

        assert pages[0].records[0].regulator_id == "rec1"
        assert pages[0].records[0].offender_name == "Acme Widgets Ltd"

    @pytest.mark.asyncio
    async def test_probe_and_total_count(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())
        handle = await adapter.initialize(SourceConfig.from_dict(cursor_config(page_size=5)))
        try:
            await adapter.validate_connection(handle)
            assert await adapter.get_total_count(handle) == 15
            assert source.requests[0].url.params["pageSize"] == "1"
        finally:
            await handle.close()

    @pytest.mark.asyncio
    async def test_total_count_respects_max_records(
        self, settings, item_factory, cursor_source, cursor_config
    ):
        source = cursor_source(cursor_pages(item_factory, 3, 5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())
        handle = await adapter.initialize(
            SourceConfig.from_dict(cursor_config(page_size=5, max_records=4))
        )
        try:
            await adapter.validate_connection(handle)
            assert await adapter.get_total_count(handle) == 4
        finally:
            await handle.close()

    @pytest.mark.asyncio
    async def test_unreachable_source(self, settings, item_factory, cursor_source, cursor_config):
        source = cursor_source(cursor_pages(item_factory, 1, 5))
        source.statuses[1] = 401
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())
        handle = await adapter.initialize(SourceConfig.from_dict(cursor_config()))
        try:
            with pytest.raises(SourceConnectionError):
                await adapter.validate_connection(handle)
        finally:
            await handle.close()

    @pytest.mark.asyncio
    async def test_each_pass_restarts(self, settings, item_factory, cursor_source, cursor_config):
        source = cursor_source(cursor_pages(item_factory, 2, 5))
        adapter = CursorPaginatedAdapter(settings=settings, transport=source.transport())
        handle = await adapter.initialize(SourceConfig.from_dict(cursor_config(page_size=5)))
        try:
            first = [r.regulator_id async for r in adapter.stream_records(handle)]
            second = [r.regulator_id async for r in adapter.stream_records(handle)]
        finally:
            await handle.close()

        assert len(first) == 10
        assert first == second


# =========================
# Range fetch + detail
# =========================


class FakeRangeSource:
    """Summary endpoint keyed by action type plus a per-id detail endpoint."""

    def __init__(self, summary: dict[str, list], details: dict[str, dict]):
        self.summary = summary
        self.details = details
        self.detail_statuses: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/summary":
            action = request.url.params.get("action_type", "all")
            return httpx.Response(200, json={"items": self.summary.get(action, [])})
        record_id = request.url.path.rsplit("/", 1)[-1]
        if record_id in self.detail_statuses:
            return httpx.Response(self.detail_statuses[record_id])
        if record_id not in self.details:
            return httpx.Response(404)
        return httpx.Response(200, json=self.details[record_id])

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def summary_requests(self) -> int:
        return sum(1 for r in self.requests if r.url.path == "/summary")


def range_config(**overrides) -> SourceConfig:
    data = {
        "source": "ea",
        "strategy": "range_detail",
        "record_type": "notice",
        "endpoint": "https://api.example.test/summary",
        "detail_endpoint": "https://api.example.test/detail/{id}",
        "date_from": "2024-01-01",
        "date_to": "2024-03-31",
        "action_types": ["prosecution", "caution"],
        "page_size": 2,
        "rate_limit_delay_ms": 0,
        "retry_attempts": 1,
        "retry_delay_ms": 0,
    }
    data.update(overrides)
    return SourceConfig.from_dict(data)


@pytest.fixture
def range_source():
    return FakeRangeSource(
        summary={
            "prosecution": [{"id": "EA-1"}, {"id": "EA-2"}],
            "caution": [{"id": "EA-2"}, {"id": "EA-3"}],
        },
        details={
            "EA-1": {"offender_name": "Acme Waste Ltd", "offender_address": "Hull HU1 1AA"},
            "EA-2": {"offender_name": "Brook Farm Partnership", "fine": "£500"},
            "EA-3": {"offender_name": "Caldera Chemicals plc", "action_date": "2024-02-10"},
        },
    )


class TestRangeDetailAdapter:
    """Tests for RangeDetailAdapter."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"date_from": None},
            {"date_from": "2024-05-01"},
            {"detail_endpoint": "https://api.example.test/detail"},
        ],
    )
    async def test_rejects_bad_config(self, settings, overrides):
        adapter = RangeDetailAdapter(settings=settings)
        with pytest.raises(ConfigurationError):
            await adapter.initialize(range_config(**overrides))

    @pytest.mark.asyncio
    async def test_summary_is_deduplicated_and_batched(self, settings, range_source):
        adapter = RangeDetailAdapter(settings=settings, transport=range_source.transport())

        pages = await collect(adapter, range_config())

        assert [page.number for page in pages] == [1, 2]
        ids = [r.regulator_id for page in pages for r in page.records]
        assert ids == ["EA-1", "EA-2", "EA-3"]
        assert range_source.summary_requests == 2

    @pytest.mark.asyncio
    async def test_detail_is_merged_into_row(self, settings, range_source):
        adapter = RangeDetailAdapter(settings=settings, transport=range_source.transport())

        pages = await collect(adapter, range_config())

        first = pages[0].records[0]
        assert first.offender_name == "Acme Waste Ltd"
        assert first.offender_postcode == "HU1 1AA"
        assert str(pages[0].records[1].fine) == "500.00"

    @pytest.mark.asyncio
    async def test_transient_detail_failure_is_an_item_error(self, settings, range_source):
        range_source.detail_statuses["EA-2"] = 503
        adapter = RangeDetailAdapter(settings=settings, transport=range_source.transport())

        pages = await collect(adapter, range_config())

        assert [r.regulator_id for r in pages[0].records] == ["EA-1"]
        assert pages[0].item_errors[0].source_record_id == "EA-2"
        assert "detail fetch failed" in pages[0].item_errors[0].error
        assert [r.regulator_id for r in pages[1].records] == ["EA-3"]

    @pytest.mark.asyncio
    async def test_missing_detail_is_fatal(self, settings, range_source):
        del range_source.details["EA-3"]
        adapter = RangeDetailAdapter(settings=settings, transport=range_source.transport())

        with pytest.raises(UnrecoverableSourceError):
            await collect(adapter, range_config())

    @pytest.mark.asyncio
    async def test_rows_without_id_are_item_errors(self, settings, range_source):
        range_source.summary = {"prosecution": [{"id": "EA-1"}, {"reference": "x"}]}
        adapter = RangeDetailAdapter(settings=settings, transport=range_source.transport())

        pages = await collect(adapter, range_config(action_types=["prosecution"]))

        assert [r.regulator_id for r in pages[0].records] == ["EA-1"]
        assert pages[0].item_errors[0].source_record_id == "batch-1-row-1"

    @pytest.mark.asyncio
    async def test_total_count_reuses_summary(self, settings, range_source):
        adapter = RangeDetailAdapter(settings=settings, transport=range_source.transport())
        handle = await adapter.initialize(range_config(max_records=2))
        try:
            await adapter.validate_connection(handle)
            assert await adapter.get_total_count(handle) == 2
            pages = [page async for page in adapter.stream_pages(handle)]
        finally:
            await handle.close()

        assert [len(page.records) for page in pages] == [2]
        assert range_source.summary_requests == 2
