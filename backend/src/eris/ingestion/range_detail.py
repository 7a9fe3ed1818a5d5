"""Range fetch + per-item detail adapter.

One summary request per action type returns every row in the configured
date range as ``{"items": [...]}``. Rows are de-duplicated by record id
(the same record can be listed under several action types), grouped into
batches of ``page_size`` and each row is enriched by a detail request to
``detail_endpoint`` (``{id}`` is substituted). The request throttle spaces
the detail requests out.
"""

from typing import Any, AsyncIterator
from urllib.parse import quote

from ..errors import ConfigurationError, PageFetchFailed, UnrecoverableSourceError
from ..models.base import FetchStrategy
from ..models.records import ItemError, SourcePage
from .base import AdapterHandle, SourceAdapter, SourceConfig

SUMMARY_CACHE_KEY = "summary"


class RangeDetailAdapter(SourceAdapter):
    """Two-stage adapter: summary list for a date range, then detail per row."""

    strategy = FetchStrategy.RANGE_DETAIL

    def validate_config(self, config: SourceConfig) -> None:
        if config.date_from is None or config.date_to is None:
            raise ConfigurationError("range_detail sources need date_from and date_to")
        if config.date_from > config.date_to:
            raise ConfigurationError(
                f"date_from {config.date_from} is after date_to {config.date_to}"
            )
        if not config.detail_endpoint or "{id}" not in config.detail_endpoint:
            raise ConfigurationError("detail_endpoint must be a URL template containing '{id}'")

    async def fetch_summary(self, handle: AdapterHandle) -> list[dict[str, Any]]:
        """Fetch (once per pass) and de-duplicate the summary rows."""
        cached = handle.cache.get(SUMMARY_CACHE_KEY)
        if cached is not None:
            return cached

        config = handle.config
        rows: list[Any] = []
        for action_type in config.action_types or [None]:
            params = {
                "date_from": config.date_from.isoformat(),
                "date_to": config.date_to.isoformat(),
            }
            if action_type:
                params["action_type"] = action_type
            payload = await handle.client.get_json(config.endpoint, params=params, page=1)
            items = payload.get("items") if isinstance(payload, dict) else None
            if not isinstance(items, list):
                raise UnrecoverableSourceError(1, "summary response has no 'items' list")
            rows.extend(items)

        unique = self.dedupe(handle, rows)
        if len(unique) < len(rows):
            handle.logger.info(f"Dropped {len(rows) - len(unique)} duplicate summary rows")
        handle.cache[SUMMARY_CACHE_KEY] = unique
        return unique

    def dedupe(self, handle: AdapterHandle, rows: list[Any]) -> list[Any]:
        seen: set[str] = set()
        unique = []
        for row in rows:
            record_id = handle.transformer.item_id(row) if isinstance(row, dict) else None
            if record_id is not None:
                if record_id in seen:
                    continue
                seen.add(record_id)
            unique.append(row)
        return unique

    async def stream_pages(self, handle: AdapterHandle) -> AsyncIterator[SourcePage]:
        config = handle.config
        try:
            try:
                rows = await self.fetch_summary(handle)
            except UnrecoverableSourceError:
                raise
            except PageFetchFailed as e:
                handle.logger.warning(f"Summary fetch failed after retries: {e.cause}")
                yield SourcePage(number=1, failure=e)
                return

            if config.max_records is not None:
                rows = rows[: config.max_records]

            for number, start in enumerate(range(0, len(rows), config.page_size), start=1):
                yield await self.fetch_batch(handle, rows[start : start + config.page_size], number)
        finally:
            # Each pass starts from a fresh summary.
            handle.cache.pop(SUMMARY_CACHE_KEY, None)

    async def fetch_batch(
        self, handle: AdapterHandle, rows: list[Any], number: int
    ) -> SourcePage:
        """Enrich one batch of summary rows with their detail records."""
        config = handle.config
        page = SourcePage(number=number)
        for index, row in enumerate(rows):
            record_id = handle.transformer.item_id(row) if isinstance(row, dict) else None
            if record_id is None:
                page.item_errors.append(
                    ItemError(
                        source_record_id=f"batch-{number}-row-{index}",
                        error="summary row has no record id",
                    )
                )
                continue

            url = config.detail_endpoint.format(id=quote(record_id, safe=""))
            try:
                detail = await handle.client.get_json(url, page=number)
            except UnrecoverableSourceError:
                raise
            except PageFetchFailed as e:
                handle.logger.warning(f"Detail fetch for {record_id} failed: {e.cause}")
                page.item_errors.append(
                    ItemError(source_record_id=record_id, error=f"detail fetch failed: {e.cause}")
                )
                continue
            if not isinstance(detail, dict):
                raise UnrecoverableSourceError(number, f"detail for {record_id} is not an object")

            merged = {**row, **detail}
            try:
                page.records.append(handle.transformer.to_record(merged, number))
            except ValueError as e:
                page.item_errors.append(
                    ItemError(source_record_id=record_id, error=f"invalid item: {e}")
                )
        return page

    async def probe(self, handle: AdapterHandle) -> None:
        await self.fetch_summary(handle)

    async def get_total_count(self, handle: AdapterHandle) -> int | None:
        rows = await self.fetch_summary(handle)
        if handle.config.max_records is not None:
            return min(len(rows), handle.config.max_records)
        return len(rows)
