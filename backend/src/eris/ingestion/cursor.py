"""Cursor-paginated source adapter.

Each page request returns ``{"records": [...], "offset": "<token>"}``
(token cursors, as served by Airtable-style APIs) or
``{"records": [...]}`` addressed by ``page=N`` (numbered cursors). The
stream ends when there is no next cursor: a missing token, an empty
numbered page, or ``max_pages`` reached.
"""

from typing import Any, AsyncIterator

from ..errors import ConfigurationError, PageFetchFailed, UnrecoverableSourceError
from ..models.base import CursorMode, FetchStrategy
from ..models.records import SourcePage
from .base import AdapterHandle, SourceAdapter, SourceConfig, cap_records

Cursor = str | int | None


class CursorPaginatedAdapter(SourceAdapter):
    """Streams a source page by page following its cursor."""

    strategy = FetchStrategy.CURSOR

    def validate_config(self, config: SourceConfig) -> None:
        if config.cursor_mode == CursorMode.TOKEN and config.start_page != 1:
            raise ConfigurationError("start_page only applies to numbered page cursors")
        if config.sort:
            for entry in config.sort:
                if "field" not in entry:
                    raise ConfigurationError(f"Sort entries need a 'field': {entry!r}")

    def url(self, config: SourceConfig) -> str:
        if config.container:
            return f"{config.endpoint.rstrip('/')}/{config.container}"
        return config.endpoint

    def params(self, config: SourceConfig, cursor: Cursor, page_size: int) -> dict[str, Any]:
        params: dict[str, Any] = {"pageSize": page_size}
        if config.view:
            params["view"] = config.view
        if config.fields:
            params["fields[]"] = list(config.fields)
        for index, entry in enumerate(config.sort or []):
            params[f"sort[{index}][field]"] = entry["field"]
            params[f"sort[{index}][direction]"] = entry.get("direction", "asc")
        if config.cursor_mode == CursorMode.TOKEN:
            if cursor:
                params["offset"] = cursor
        else:
            params["page"] = cursor
        return params

    async def fetch_page(
        self, handle: AdapterHandle, cursor: Cursor, number: int, page_size: int | None = None
    ) -> tuple[list[Any], Cursor, dict[str, Any]]:
        """Fetch one page.

        Returns:
            (raw items, next cursor or None, full payload)
        """
        config = handle.config
        payload = await handle.client.get_json(
            self.url(config),
            params=self.params(config, cursor, page_size or config.page_size),
            page=number,
        )
        records = payload.get("records") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            raise UnrecoverableSourceError(number, "response has no 'records' list")

        if config.cursor_mode == CursorMode.TOKEN:
            next_cursor = payload.get("offset") or None
            if next_cursor is not None and not isinstance(next_cursor, str):
                raise UnrecoverableSourceError(number, "'offset' cursor is not a string")
        else:
            next_cursor = cursor + 1 if records else None
        return records, next_cursor, payload

    async def stream_pages(self, handle: AdapterHandle) -> AsyncIterator[SourcePage]:
        config = handle.config
        numbered = config.cursor_mode == CursorMode.PAGE
        cursor: Cursor = config.start_page if numbered else None
        number = config.start_page if numbered else 1
        fetched = 0
        emitted = 0

        while True:
            if config.max_pages is not None and fetched >= config.max_pages:
                handle.logger.info(f"Reached max_pages={config.max_pages}")
                return
            if config.max_records is not None and emitted >= config.max_records:
                handle.logger.info(f"Reached max_records={config.max_records}")
                return

            fetched += 1
            try:
                items, next_cursor, _ = await self.fetch_page(handle, cursor, number)
            except UnrecoverableSourceError:
                raise
            except PageFetchFailed as e:
                handle.logger.warning(f"Page {number} failed after retries: {e.cause}")
                yield SourcePage(number=number, failure=e)
                if not numbered:
                    # The next token is unknown once a token page fails.
                    handle.logger.warning("Token cursor lost; ending stream")
                    return
                cursor = cursor + 1
                number += 1
                continue

            page = self.build_page(handle, items, number)
            page.records = cap_records(page.records, emitted, config.max_records)
            emitted += len(page.records)
            if page.records or page.item_errors:
                yield page

            if next_cursor is None:
                return
            cursor = next_cursor
            number += 1

    async def probe(self, handle: AdapterHandle) -> None:
        start: Cursor = handle.config.start_page if handle.config.cursor_mode == CursorMode.PAGE else None
        _, _, payload = await self.fetch_page(handle, start, handle.config.start_page, page_size=1)
        total = payload.get("total")
        if isinstance(total, int):
            handle.cache["total"] = total

    async def get_total_count(self, handle: AdapterHandle) -> int | None:
        total = handle.cache.get("total")
        if total is None:
            return None
        if handle.config.max_records is not None:
            return min(total, handle.config.max_records)
        return total
